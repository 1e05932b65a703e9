"""
Amazon Neptune graph store gateway with Gremlin Python driver and AWS SigV4 authentication.

Holds the learned state of the pipeline: ``Memory``, ``QueryPattern`` and
``Evaluation`` vertices, the cached ``LearningStats`` vertex, and the ``USED_EVIDENCE``,
``APPLIED_PATTERN`` and ``SIMILAR_TO`` edges between them and the
knowledge graph.
"""

import json
import math
import uuid
from functools import wraps
from typing import Any, Dict, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, Operator, Order

from ..models.core import Evaluation, EvaluationRecord, Memory, QueryPattern, RollingStatistics
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import parse_timestamp, to_seconds_str

logger = get_logger(__name__)

MEMORY_LABEL = 'Memory'
PATTERN_LABEL = 'QueryPattern'
STATS_LABEL = 'LearningStats'
STATS_VERTEX_ID = 'learning-stats'
EVALUATION_LABEL = 'Evaluation'

USED_EVIDENCE = 'USED_EVIDENCE'
APPLIED_PATTERN = 'APPLIED_PATTERN'
SIMILAR_TO = 'SIMILAR_TO'


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _flatten(data: Dict[Any, Any]) -> Dict[str, Any]:
    """Unwrap single-cardinality valueMap lists and drop token keys."""
    return {key: value[0] if isinstance(value, list) and value else value for key, value in data.items() if isinstance(key, str)}


def _safe_mean(values: List[Any]) -> float:
    if not values or values[0] is None:
        return 0.0
    mean = float(values[0])
    return 0.0 if math.isnan(mean) else mean


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))

        try:
            self.g = traversal().with_remote(self.connection)
        except Exception:
            self.g = traversal().withRemote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if getattr(self, 'connection', None) is not None:
            self.connection.close()

    # Memories

    @retry_on_connection_error
    def create_memory_vertex(self, memory: Memory) -> bool:
        """
        Create a Memory vertex unless one with the same id exists.

        Returns:
            True if a vertex was created, False if it already existed
        """
        if self.g.V().has(MEMORY_LABEL, 'id', memory.id).has_next():
            logger.debug(f'Memory vertex already exists: {memory.id}')
            return False

        self.g.add_v(MEMORY_LABEL).property('id', memory.id)\
            .property('interaction_id', memory.interaction_id)\
            .property('question', memory.question)\
            .property('answer', memory.answer)\
            .property('graph_queries', json.dumps(memory.graph_queries))\
            .property('grounding_score', memory.grounding_score)\
            .property('accuracy_score', memory.accuracy_score)\
            .property('completeness_score', memory.completeness_score)\
            .property('pedagogy_score', memory.pedagogy_score)\
            .property('clarity_score', memory.clarity_score)\
            .property('overall_score', memory.overall_score)\
            .property('evaluator_notes', memory.evaluator_notes)\
            .property('memories_used', json.dumps(memory.memories_used))\
            .property('evidence_node_ids', json.dumps(memory.evidence_node_ids))\
            .property('created_at', to_seconds_str(memory.created_at.timestamp()))\
            .next()

        logger.debug(f'Created memory vertex: {memory.id}')
        return True

    @retry_on_connection_error
    def list_recent_memories(self, limit: int = 20) -> List[Memory]:
        """Most recently created memories, newest first."""
        rows = self.g.V().has_label(MEMORY_LABEL)\
            .order().by('created_at', Order.desc)\
            .limit(limit)\
            .value_map().to_list()
        return [Memory.from_document(_flatten(row)) for row in rows]

    # Evidence

    @retry_on_connection_error
    def evidence_target_exists(self, node_id: str) -> bool:
        """Whether a knowledge graph node with this id exists."""
        return self.g.V().has('id', node_id).not_(__.has_label(MEMORY_LABEL)).has_next()

    @retry_on_connection_error
    def create_evidence_edge(self, memory_id: str, node_id: str, inherited: bool = False) -> bool:
        """
        Link a memory to a cited knowledge graph node.

        Returns:
            True if an edge was created, False if the link already existed
        """
        exists = self.g.V().has(MEMORY_LABEL, 'id', memory_id)\
            .out_e(USED_EVIDENCE).where(__.in_v().has('id', node_id)).has_next()
        if exists:
            return False

        self.g.V().has(MEMORY_LABEL, 'id', memory_id).as_('m')\
            .V().has('id', node_id).not_(__.has_label(MEMORY_LABEL)).limit(1)\
            .add_e(USED_EVIDENCE).from_('m')\
            .property('inherited', inherited)\
            .property('created_at', to_seconds_str())\
            .next()

        logger.debug(f'Linked memory {memory_id} to evidence {node_id}')
        return True

    @retry_on_connection_error
    def get_evidence_ids(self, memory_id: str) -> List[str]:
        """Ids of the knowledge graph nodes a memory cites."""
        return self.g.V().has(MEMORY_LABEL, 'id', memory_id).out(USED_EVIDENCE).values('id').dedup().to_list()

    # Query patterns

    @retry_on_connection_error
    def upsert_query_pattern(self, memory_id: str, name: str, description: str, template: str) -> QueryPattern:
        """
        Upsert a QueryPattern by canonical name and link the memory to it.

        The success counter is incremented only when the memory is linked
        for the first time, so re-running for the same memory is a no-op.

        Returns:
            The pattern after the update
        """
        now = to_seconds_str()

        self.g.V().has(PATTERN_LABEL, 'name', name).fold().coalesce(
            __.unfold(),
            __.add_v(PATTERN_LABEL).property('id', str(uuid.uuid4()))
            .property('name', name)
            .property('description', description)
            .property('template', template)
            .property('success_count', 0)
            .property('failure_count', 0)
            .property('created_at', now)
            .property('updated_at', now)).next()

        already_linked = self.g.V().has(MEMORY_LABEL, 'id', memory_id)\
            .out(APPLIED_PATTERN).has('name', name).has_next()

        if not already_linked:
            self.g.V().has(MEMORY_LABEL, 'id', memory_id).as_('m')\
                .V().has(PATTERN_LABEL, 'name', name)\
                .add_e(APPLIED_PATTERN).from_('m')\
                .property('created_at', now)\
                .next()

            # Increment in a single traversal so concurrent writers never lose an update
            self.g.with_sack(0).V().has(PATTERN_LABEL, 'name', name)\
                .sack(Operator.assign).by('success_count')\
                .sack(Operator.sum).by(__.constant(1))\
                .property(Cardinality.single, 'success_count', __.sack())\
                .property(Cardinality.single, 'updated_at', now)\
                .iterate()
        else:
            logger.debug(f'Memory {memory_id} already linked to pattern {name}')

        data = _flatten(self.g.V().has(PATTERN_LABEL, 'name', name).value_map().next())
        return self._to_pattern(data)

    @retry_on_connection_error
    def list_query_patterns(self, limit: int = 20) -> List[QueryPattern]:
        """Query patterns ordered by total usage, most used first."""
        rows = self.g.V().has_label(PATTERN_LABEL).value_map().to_list()
        patterns = [self._to_pattern(_flatten(row)) for row in rows]
        patterns.sort(key=lambda pattern: pattern.total_usage, reverse=True)
        return patterns[:limit]

    @staticmethod
    def _to_pattern(data: Dict[str, Any]) -> QueryPattern:
        return QueryPattern(id=data.get('id', ''),
                            name=data.get('name', ''),
                            description=data.get('description', ''),
                            template=data.get('template', ''),
                            success_count=int(data.get('success_count', 0)),
                            failure_count=int(data.get('failure_count', 0)))

    # Evaluations

    @retry_on_connection_error
    def save_evaluation(self, record: EvaluationRecord) -> bool:
        """
        Store an evaluation unless one exists for the same interaction.

        Returns:
            True if a vertex was created, False if it already existed
        """
        if self.g.V().has(EVALUATION_LABEL, 'id', record.id).has_next():
            logger.debug(f'Evaluation already stored for interaction {record.interaction_id}')
            return False

        evaluation = record.evaluation
        self.g.add_v(EVALUATION_LABEL).property('id', record.id)\
            .property('interaction_id', record.interaction_id)\
            .property('grounding_score', evaluation.grounding)\
            .property('accuracy_score', evaluation.accuracy)\
            .property('completeness_score', evaluation.completeness)\
            .property('pedagogy_score', evaluation.pedagogy)\
            .property('clarity_score', evaluation.clarity)\
            .property('overall_score', evaluation.overall)\
            .property('evaluator_notes', evaluation.notes_json())\
            .property('is_default', evaluation.is_default)\
            .property('created_at', to_seconds_str(record.created_at.timestamp()))\
            .next()

        logger.debug(f'Stored evaluation for interaction {record.interaction_id}')
        return True

    @retry_on_connection_error
    def list_evaluations(self, limit: Optional[int] = None) -> List[EvaluationRecord]:
        """Stored evaluations, oldest first."""
        query = self.g.V().has_label(EVALUATION_LABEL).order().by('created_at', Order.asc)
        if limit:
            query = query.limit(limit)
        return [self._to_evaluation_record(_flatten(row)) for row in query.value_map().to_list()]

    @staticmethod
    def _to_evaluation_record(data: Dict[str, Any]) -> EvaluationRecord:
        notes = json.loads(data.get('evaluator_notes') or '{}')
        evaluation = Evaluation(grounding=float(data.get('grounding_score', 0.0)),
                                accuracy=float(data.get('accuracy_score', 0.0)),
                                completeness=float(data.get('completeness_score', 0.0)),
                                pedagogy=float(data.get('pedagogy_score', 0.0)),
                                clarity=float(data.get('clarity_score', 0.0)),
                                strengths=list(notes.get('strengths') or []),
                                weaknesses=list(notes.get('weaknesses') or []),
                                suggestions=list(notes.get('suggestions') or []),
                                is_default=bool(data.get('is_default', False)))
        return EvaluationRecord(interaction_id=data.get('interaction_id', ''),
                                evaluation=evaluation,
                                created_at=parse_timestamp(data.get('created_at')))

    # Similarity

    @retry_on_connection_error
    def create_similarity_edge(self, source_id: str, target_id: str, similarity: float) -> bool:
        """
        Create a SIMILAR_TO edge unless the ordered pair is already linked.

        Returns:
            True if an edge was created, False otherwise
        """
        exists = self.g.V().has(MEMORY_LABEL, 'id', source_id)\
            .out_e(SIMILAR_TO).where(__.in_v().has(MEMORY_LABEL, 'id', target_id)).has_next()
        if exists:
            return False

        self.g.V().has(MEMORY_LABEL, 'id', source_id).as_('m')\
            .V().has(MEMORY_LABEL, 'id', target_id)\
            .add_e(SIMILAR_TO).from_('m')\
            .property('similarity', similarity)\
            .property('created_at', to_seconds_str())\
            .next()

        logger.debug(f'Linked similar memories {source_id} -> {target_id} ({similarity:.3f})')
        return True

    # Statistics

    @retry_on_connection_error
    def compute_learning_stats(self) -> RollingStatistics:
        """Recompute aggregate statistics from the graph."""
        total_memories = self.g.V().has_label(MEMORY_LABEL).count().next()
        avg_score = _safe_mean(self.g.V().has_label(MEMORY_LABEL).values('overall_score').mean().to_list())
        total_patterns = self.g.V().has_label(PATTERN_LABEL).count().next()

        return RollingStatistics(total_memories=int(total_memories),
                                 avg_overall_score=avg_score,
                                 total_patterns=int(total_patterns))

    @retry_on_connection_error
    def save_learning_stats(self, stats: RollingStatistics) -> None:
        """Overwrite the cached statistics vertex."""
        self.g.V().has(STATS_LABEL, 'id', STATS_VERTEX_ID).fold().coalesce(
            __.unfold(),
            __.add_v(STATS_LABEL).property('id', STATS_VERTEX_ID))\
            .property(Cardinality.single, 'total_memories', stats.total_memories)\
            .property(Cardinality.single, 'avg_overall_score', stats.avg_overall_score)\
            .property(Cardinality.single, 'total_patterns', stats.total_patterns)\
            .property(Cardinality.single, 'last_updated', to_seconds_str(stats.last_updated.timestamp()))\
            .iterate()

    @retry_on_connection_error
    def get_learning_stats(self) -> Optional[RollingStatistics]:
        """Read the cached statistics vertex, None if never written."""
        rows = self.g.V().has(STATS_LABEL, 'id', STATS_VERTEX_ID).value_map().to_list()
        if not rows:
            return None

        data = _flatten(rows[0])
        return RollingStatistics(total_memories=int(data.get('total_memories', 0)),
                                 avg_overall_score=float(data.get('avg_overall_score', 0.0)),
                                 total_patterns=int(data.get('total_patterns', 0)),
                                 last_updated=parse_timestamp(data.get('last_updated')))

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        self.g.V().limit(1).count().next()
        return True
