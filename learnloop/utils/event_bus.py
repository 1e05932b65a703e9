"""
Event transport for the learning pipeline.

Both backends deliver at least once: a message whose handler raises is
delivered again later, so handlers must be idempotent.
"""

import json
import random
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import EventBusConfig
from .logging_config import get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Any]


class EventBusError(Exception):
    """Custom exception for event transport errors."""
    pass


class EventBus(ABC):
    """Publish/subscribe interface shared by the event transports."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers[name].append(handler)
        logger.debug(f'Subscribed {getattr(handler, "__name__", handler)} to {name}')

    @abstractmethod
    def publish(self, name: str, data: Dict[str, Any], event_id: Optional[str] = None) -> str:
        """Send an event; returns its id."""

    def _dispatch(self, envelope: Dict[str, Any]) -> None:
        """Run every handler of an event; any exception propagates to the transport."""
        name = envelope.get('name')
        handlers = self._handlers.get(name, [])
        if not handlers:
            logger.warning(f'No handler subscribed to event {name}, dropping {envelope.get("id")}')
            return

        for handler in handlers:
            handler(envelope.get('data') or {})

    @staticmethod
    def _envelope(name: str, data: Dict[str, Any], event_id: Optional[str]) -> Dict[str, Any]:
        return {'name': name, 'id': event_id or str(uuid.uuid4()), 'data': data}


class InMemoryEventBus(EventBus):
    """Process-local queue for development and tests.

    Failed deliveries are re-enqueued until ``max_deliveries`` is reached.
    """

    def __init__(self, max_deliveries: int = 3):
        super().__init__()
        self.max_deliveries = max_deliveries
        self.queue: Deque[Tuple[Dict[str, Any], int]] = deque()
        self.published: List[Dict[str, Any]] = []
        self.dead_letters: List[Dict[str, Any]] = []

    def publish(self, name: str, data: Dict[str, Any], event_id: Optional[str] = None) -> str:
        # Round-trip through JSON so handlers see exactly what a real queue would deliver
        envelope = json.loads(json.dumps(self._envelope(name, data, event_id)))
        self.queue.append((envelope, 0))
        self.published.append(envelope)
        logger.debug(f'Published {name} ({envelope["id"]})')
        return envelope['id']

    def drain(self, max_events: Optional[int] = None) -> int:
        """
        Deliver queued events, including events published by handlers.

        Returns:
            Number of deliveries attempted
        """
        delivered = 0
        while self.queue and (max_events is None or delivered < max_events):
            envelope, attempts = self.queue.popleft()
            delivered += 1
            try:
                self._dispatch(envelope)
            except Exception as e:
                attempts += 1
                if attempts < self.max_deliveries:
                    logger.warning(f'Delivery {attempts} of {envelope["name"]} ({envelope["id"]}) failed: {e}; requeueing')
                    self.queue.append((envelope, attempts))
                else:
                    logger.error(f'Dropping {envelope["name"]} ({envelope["id"]}) after {attempts} deliveries: {e}')
                    self.dead_letters.append(envelope)
        return delivered


class SQSEventBus(EventBus):
    """Amazon SQS backed event transport."""

    def __init__(self, config: EventBusConfig, client=None, retry_attempts: int = 3, retry_delay: float = 1.0):
        """
        Initialize SQS event bus.

        Args:
            config: EventBusConfig instance with the queue URL and polling settings
            client: Optional pre-built boto3 SQS client
        """
        super().__init__()
        if not config.queue_url:
            raise EventBusError('EVENT_QUEUE_URL is not set')

        self.config = config
        self.queue_url = config.queue_url
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.sqs = client or boto3.client('sqs', region_name=config.region)
        self._running = False

        logger.info(f'Initialized SQS event bus for queue: {self.queue_url}')

    def _call_with_retry(self, operation: str, **kwargs) -> Dict[str, Any]:
        for attempt in range(self.retry_attempts):
            try:
                return getattr(self.sqs, operation)(**kwargs)

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'SQS {operation} attempt {attempt + 1}/{self.retry_attempts} failed: {e}')

                if attempt < self.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise EventBusError(f'SQS {operation} failed after {self.retry_attempts} attempts: {e}')

        raise EventBusError(f'SQS {operation} failed after {self.retry_attempts} attempts')

    def publish(self, name: str, data: Dict[str, Any], event_id: Optional[str] = None) -> str:
        envelope = self._envelope(name, data, event_id)
        self._call_with_retry('send_message',
                              QueueUrl=self.queue_url,
                              MessageBody=json.dumps(envelope),
                              MessageAttributes={'event_name': {
                                  'DataType': 'String',
                                  'StringValue': name
                              }})
        logger.debug(f'Published {name} ({envelope["id"]}) to SQS')
        return envelope['id']

    def poll(self) -> int:
        """
        Receive one batch and dispatch it.

        Messages are deleted only after every handler succeeded; failures are
        left on the queue and reappear after the visibility timeout.

        Returns:
            Number of messages handled successfully
        """
        response = self._call_with_retry('receive_message',
                                         QueueUrl=self.queue_url,
                                         MaxNumberOfMessages=self.config.max_messages,
                                         WaitTimeSeconds=self.config.wait_seconds,
                                         VisibilityTimeout=self.config.visibility_timeout,
                                         MessageAttributeNames=['All'])

        handled = 0
        for message in response.get('Messages', []):
            try:
                envelope = json.loads(message['Body'])
            except json.JSONDecodeError as e:
                logger.error(f'Discarding undecodable message {message.get("MessageId")}: {e}')
                self._delete(message)
                continue

            try:
                self._dispatch(envelope)
            except Exception as e:
                logger.error(f'Handler for {envelope.get("name")} ({envelope.get("id")}) failed, leaving for redelivery: {e}')
                continue

            self._delete(message)
            handled += 1

        return handled

    def _delete(self, message: Dict[str, Any]) -> None:
        self._call_with_retry('delete_message', QueueUrl=self.queue_url, ReceiptHandle=message['ReceiptHandle'])

    def run_forever(self) -> None:
        """Long-poll the queue until ``stop()`` is called."""
        self._running = True
        logger.info('SQS worker started')
        while self._running:
            try:
                self.poll()
            except EventBusError as e:
                logger.error(f'SQS poll failed: {e}')
                time.sleep(self.retry_delay)
        logger.info('SQS worker stopped')

    def stop(self) -> None:
        self._running = False

    def health_check(self) -> bool:
        try:
            self._call_with_retry('get_queue_attributes', QueueUrl=self.queue_url, AttributeNames=['QueueArn'])
            return True

        except Exception as e:
            logger.error(f'SQS health check failed: {e}')
            return False


def create_event_bus(config: EventBusConfig) -> EventBus:
    """Build the configured event transport."""
    if config.backend == 'memory':
        return InMemoryEventBus()
    if config.backend == 'sqs':
        return SQSEventBus(config)
    raise EventBusError(f'Unknown event bus backend: {config.backend}')
