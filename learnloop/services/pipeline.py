"""
Pipeline Coordinator: drive each finished interaction through evaluation and enrichment.

Two jobs are chained by events::

    interaction.finished -> evaluate-interaction (evaluate, save-evaluation) -> evaluation.finished
    evaluation.finished  -> enrich-memory (write-memory, link-evidence,
                            extract-pattern, link-similar-memories, refresh-stats)

Each job gets a fixed retry budget. Step results are kept for the lifetime
of a job run, so a retried attempt resumes after the last completed step.
"""

import random
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..models.core import Evaluation, Interaction
from ..models.events import (EVALUATION_FINISHED, INTERACTION_FINISHED, evaluation_finished_payload, event_id_for,
                             interaction_finished_payload, parse_evaluation_finished, parse_interaction_finished)
from ..utils.config import config
from ..utils.event_bus import EventBus
from ..utils.logging_config import get_logger
from .evaluation import EvaluationRecorder, RubricEvaluator
from .memory_writer import MemoryWriter
from .pattern_extraction import PatternExtractor
from .similarity_linker import SimilarityLinker
from .statistics import StatisticsAggregator

logger = get_logger(__name__)


class PipelineState(Enum):
    TRIGGERED = 'triggered'
    EVALUATING = 'evaluating'
    EVALUATION_FAILED = 'evaluation_failed'
    DEFAULT_APPLIED = 'default_applied'
    EVALUATED = 'evaluated'
    ENRICHING = 'enriching'
    COMPLETE = 'complete'
    DROPPED = 'dropped'


class PipelineJobError(Exception):
    """Raised when a job has used up its retry budget."""
    pass


class JobRun:
    """One execution of a job, with per-step memoisation across retry attempts."""

    def __init__(self, job_name: str, run_id: str, attempts: int = 3, retry_delay: float = 2.0):
        self.job_name = job_name
        self.run_id = run_id
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.completed: Dict[str, Any] = {}

    def step(self, name: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a critical step once; a failure fails the current attempt."""
        if name in self.completed:
            logger.debug(f'[{self.job_name}:{self.run_id}] step {name} already completed, reusing result')
            return self.completed[name]

        logger.debug(f'[{self.job_name}:{self.run_id}] running step {name}')
        result = func(*args, **kwargs)
        self.completed[name] = result
        return result

    def optional_step(self, name: str, func: Callable[..., Any], *args, default: Any = None, **kwargs) -> Any:
        """Run a non-critical step; a failure is logged and ``default`` returned."""
        try:
            return self.step(name, func, *args, **kwargs)
        except Exception as e:
            logger.error(f'[{self.job_name}:{self.run_id}] non-critical step {name} failed: {e}')
            self.completed[name] = default
            return default

    def execute(self, job: Callable[['JobRun'], Any]) -> Any:
        """
        Run ``job`` until it succeeds or the attempts are exhausted.

        Raises:
            PipelineJobError: If every attempt failed
        """
        for attempt in range(self.attempts):
            try:
                return job(self)

            except Exception as e:
                logger.warning(f'[{self.job_name}:{self.run_id}] attempt {attempt + 1}/{self.attempts} failed: {e}')

                if attempt < self.attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.retry_delay * (2**attempt) + random.uniform(0, self.retry_delay)
                    time.sleep(delay)
                else:
                    raise PipelineJobError(f'{self.job_name} failed after {self.attempts} attempts: {e}')

        raise PipelineJobError(f'{self.job_name} failed after {self.attempts} attempts')


def publish_interaction(bus: EventBus, interaction: Interaction) -> str:
    """Hand a finished interaction to the pipeline; returns the event id."""
    return bus.publish(INTERACTION_FINISHED,
                       interaction_finished_payload(interaction),
                       event_id=event_id_for(INTERACTION_FINISHED, interaction))


class PipelineCoordinator:
    """Subscribe the evaluation and enrichment jobs to the event bus."""

    def __init__(self,
                 bus: EventBus,
                 evaluator: Optional[RubricEvaluator] = None,
                 writer: Optional[MemoryWriter] = None,
                 pattern_extractor: Optional[PatternExtractor] = None,
                 similarity_linker: Optional[SimilarityLinker] = None,
                 statistics: Optional[StatisticsAggregator] = None,
                 recorder: Optional[EvaluationRecorder] = None,
                 attempts: Optional[int] = None,
                 retry_delay: Optional[float] = None):
        self.bus = bus
        self.evaluator = evaluator or RubricEvaluator()
        self.writer = writer or MemoryWriter()
        self.pattern_extractor = pattern_extractor or PatternExtractor()
        self.similarity_linker = similarity_linker or SimilarityLinker()
        self.statistics = statistics or StatisticsAggregator()
        self.recorder = recorder or EvaluationRecorder()
        self.attempts = attempts or config.pipeline.job_attempts
        self.retry_delay = config.pipeline.job_retry_delay if retry_delay is None else retry_delay

        logger.info('Initialized PipelineCoordinator')

    def register(self, bus: Optional[EventBus] = None) -> None:
        bus = bus or self.bus
        bus.subscribe(INTERACTION_FINISHED, self.handle_interaction_finished)
        bus.subscribe(EVALUATION_FINISHED, self.handle_evaluation_finished)

    def _transition(self, interaction_id: str, state: PipelineState) -> PipelineState:
        logger.info(f'Interaction {interaction_id}: {state.name}')
        return state

    def _publish_evaluation(self, interaction: Interaction, evaluation: Evaluation) -> str:
        return self.bus.publish(EVALUATION_FINISHED,
                                evaluation_finished_payload(interaction, evaluation),
                                event_id=event_id_for(EVALUATION_FINISHED, interaction))

    def handle_interaction_finished(self, data: Dict[str, Any]) -> PipelineState:
        """
        Evaluation job: score the interaction and emit ``evaluation.finished``.

        When the job exhausts its retries the default evaluation is emitted
        instead, so every interaction reaches enrichment.
        """
        try:
            interaction = parse_interaction_finished(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f'Discarding unreadable {INTERACTION_FINISHED} event: {e}')
            return PipelineState.DROPPED

        interaction_id = interaction.interaction_id
        self._transition(interaction_id, PipelineState.TRIGGERED)

        def job(run: JobRun) -> Evaluation:
            self._transition(interaction_id, PipelineState.EVALUATING)
            evaluation = run.step('evaluate', self.evaluator.evaluate, interaction)
            run.optional_step('save-evaluation', self.recorder.record, interaction, evaluation)
            run.step('publish-evaluation', self._publish_evaluation, interaction, evaluation)
            return evaluation

        run = JobRun('evaluate-interaction', interaction_id, self.attempts, self.retry_delay)
        try:
            evaluation = run.execute(job)
        except PipelineJobError as e:
            self._transition(interaction_id, PipelineState.EVALUATION_FAILED)
            logger.error(f'Evaluation job failed for interaction {interaction_id}, applying default scores: {e}')
            evaluation = Evaluation.default()
            self.recorder.record(interaction, evaluation)
            self._publish_evaluation(interaction, evaluation)
            self._transition(interaction_id, PipelineState.DEFAULT_APPLIED)
            return self._transition(interaction_id, PipelineState.EVALUATED)

        if evaluation.is_default:
            self._transition(interaction_id, PipelineState.DEFAULT_APPLIED)
        return self._transition(interaction_id, PipelineState.EVALUATED)

    def handle_evaluation_finished(self, data: Dict[str, Any]) -> PipelineState:
        """
        Enrichment job: write the memory and its links, then refresh statistics.

        Writing the memory and linking its evidence are critical; once their
        retries are exhausted the interaction is dropped. Pattern extraction,
        similarity linking and the statistics refresh never fail the job.
        """
        try:
            interaction, evaluation = parse_evaluation_finished(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f'Discarding unreadable {EVALUATION_FINISHED} event: {e}')
            return PipelineState.DROPPED

        interaction_id = interaction.interaction_id
        self._transition(interaction_id, PipelineState.ENRICHING)

        def job(run: JobRun):
            memory = run.step('write-memory', self.writer.write, interaction, evaluation)
            run.step('link-evidence', self.writer.link_evidence, memory, interaction)
            run.optional_step('extract-pattern', self.pattern_extractor.extract, memory, interaction, evaluation.overall)
            run.optional_step('link-similar-memories', self.similarity_linker.link, memory, default=[])
            run.optional_step('refresh-stats', self.statistics.refresh)
            return memory

        run = JobRun('enrich-memory', interaction_id, self.attempts, self.retry_delay)
        try:
            memory = run.execute(job)
        except PipelineJobError as e:
            logger.error(f'Dropping interaction {interaction_id}, memory was not recorded: {e}')
            return self._transition(interaction_id, PipelineState.DROPPED)

        logger.info(f'Interaction {interaction_id} recorded as memory {memory.id}')
        return self._transition(interaction_id, PipelineState.COMPLETE)
