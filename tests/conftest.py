import hashlib
import math
from typing import Any, Dict, List, Optional

import pytest

from learnloop.models.core import EvaluationRecord, Memory, QueryPattern, RollingStatistics
from learnloop.services.evaluation import EvaluationRecorder, RubricEvaluator
from learnloop.services.memory_writer import MemoryWriter
from learnloop.services.pattern_extraction import PatternExtractor
from learnloop.services.pipeline import PipelineCoordinator
from learnloop.services.similarity_linker import SimilarityLinker
from learnloop.services.statistics import StatisticsAggregator
from learnloop.utils.bedrock_embed import BedrockEmbedError
from learnloop.utils.bedrock_llm import BedrockLLMError
from learnloop.utils.event_bus import InMemoryEventBus
from learnloop.utils.neptune_client import NeptuneError
from learnloop.utils.opensearch_client import OpenSearchError

DIMENSION = 4


def _cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class _Failing:
    """Mixin: make named methods raise ``error`` a number of times (None = always)."""

    error = Exception

    def __init__(self) -> None:
        self.failures: Dict[str, Optional[int]] = {}
        self.calls: List[str] = []

    def fail(self, method: str, times: Optional[int] = None) -> None:
        self.failures[method] = times

    def _call(self, method: str) -> None:
        self.calls.append(method)
        if method not in self.failures:
            return
        remaining = self.failures[method]
        if remaining is not None:
            if remaining <= 0:
                return
            self.failures[method] = remaining - 1
        raise self.error(f'{method} unavailable')


class FakeEmbed(_Failing):
    """Preset vectors per text, deterministic hash vectors otherwise."""

    error = BedrockEmbedError

    def __init__(self, dimension: int = DIMENSION) -> None:
        super().__init__()
        self.dimension = dimension
        self.vectors: Dict[str, List[float]] = {}

    def embed(self, text: str, input_type: str = 'search_query') -> List[float]:
        self._call('embed')
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot generate embedding for empty text')
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode('utf-8')).digest()
        return [digest[i] / 255.0 + 0.01 for i in range(self.dimension)]

    def health_check(self) -> bool:
        return True


class FakeLLM(_Failing):
    """Judgment model returning a preset JSON object."""

    error = BedrockLLMError

    def __init__(self, response: Optional[Dict[str, Any]] = None) -> None:
        super().__init__()
        self.response = response
        self.prompts: List[str] = []

    def generate_json(self, prompt: str, system_prompt: str) -> Dict[str, Any]:
        self.prompts.append(prompt)
        self._call('generate_json')
        if self.response is None:
            raise BedrockLLMError('No response configured')
        return dict(self.response)

    def health_check(self) -> bool:
        return True


class FakeOpenSearch(_Failing):
    """In-memory cosine k-NN index of memory documents."""

    error = OpenSearchError

    def __init__(self) -> None:
        super().__init__()
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.canned: Optional[List[Dict[str, Any]]] = None

    def index_memory(self, document: Dict[str, Any]) -> bool:
        self._call('index_memory')
        if document['id'] in self.documents:
            return False
        self.documents[document['id']] = dict(document)
        return True

    def get_document(self, memory_id: str) -> Optional[Dict[str, Any]]:
        self._call('get_document')
        if memory_id not in self.documents:
            return None
        doc = {k: v for k, v in self.documents[memory_id].items() if k != 'embedding'}
        return {'id': f'os-{memory_id}', 'score': 1.0, 'document': doc}

    def knn_search(self, query_vector: List[float], top_k: int = 3) -> List[Dict[str, Any]]:
        self._call('knn_search')
        if self.canned is not None:
            return [dict(hit) for hit in self.canned[:top_k]]

        hits = []
        for memory_id, doc in self.documents.items():
            similarity = _cosine(query_vector, doc['embedding'])
            hits.append({
                'id': f'os-{memory_id}',
                'score': 1.0 / (2.0 - similarity),
                'similarity': similarity,
                'document': {k: v for k, v in doc.items() if k != 'embedding'},
            })
        hits.sort(key=lambda hit: hit['similarity'], reverse=True)
        return hits[:top_k]

    def health_check(self) -> bool:
        return True


def search_hit(memory_id: str, similarity: float, overall: float, **fields: Any) -> Dict[str, Any]:
    """A k-NN hit as returned by OpenSearchClient.knn_search."""
    document = {
        'id': memory_id,
        'question': fields.pop('question', f'Question for {memory_id}'),
        'answer': fields.pop('answer', f'Answer for {memory_id}'),
        'graph_queries': fields.pop('graph_queries', ['MATCH (o:Objective) RETURN o']),
        'grounding_score': overall,
        'accuracy_score': overall,
        'completeness_score': overall,
        'pedagogy_score': overall,
        'clarity_score': overall,
        'overall_score': overall,
        'evaluator_notes': '{"strengths": ["Cited objectives"], "weaknesses": [], "suggestions": []}',
        'created_at': '2026-01-01T00:00:00+00:00',
    }
    document.update(fields)
    return {'id': f'os-{memory_id}', 'score': 1.0 / (2.0 - similarity), 'similarity': similarity, 'document': document}


class FakeNeptune(_Failing):
    """Arena of nodes keyed by id plus typed edge lists."""

    error = NeptuneError

    def __init__(self) -> None:
        super().__init__()
        self.nodes: Dict[str, str] = {}  # knowledge graph node id -> label
        self.memories: Dict[str, Memory] = {}
        self.patterns: Dict[str, QueryPattern] = {}
        self.evidence_edges: List[Dict[str, Any]] = []
        self.pattern_edges: List[Dict[str, str]] = []
        self.similarity_edges: List[Dict[str, Any]] = []
        self.stats: Optional[RollingStatistics] = None
        self.evaluations: Dict[str, EvaluationRecord] = {}

    def add_node(self, node_id: str, label: str = 'Objective') -> None:
        self.nodes[node_id] = label

    def create_memory_vertex(self, memory: Memory) -> bool:
        self._call('create_memory_vertex')
        if memory.id in self.memories:
            return False
        self.memories[memory.id] = memory
        return True

    def list_recent_memories(self, limit: int = 20) -> List[Memory]:
        self._call('list_recent_memories')
        memories = sorted(self.memories.values(), key=lambda memory: memory.created_at, reverse=True)
        return memories[:limit]

    def evidence_target_exists(self, node_id: str) -> bool:
        self._call('evidence_target_exists')
        return node_id in self.nodes

    def create_evidence_edge(self, memory_id: str, node_id: str, inherited: bool = False) -> bool:
        self._call('create_evidence_edge')
        if any(e['memory_id'] == memory_id and e['node_id'] == node_id for e in self.evidence_edges):
            return False
        self.evidence_edges.append({'memory_id': memory_id, 'node_id': node_id, 'inherited': inherited})
        return True

    def get_evidence_ids(self, memory_id: str) -> List[str]:
        self._call('get_evidence_ids')
        return [e['node_id'] for e in self.evidence_edges if e['memory_id'] == memory_id]

    def upsert_query_pattern(self, memory_id: str, name: str, description: str, template: str) -> QueryPattern:
        self._call('upsert_query_pattern')
        pattern = self.patterns.setdefault(
            name, QueryPattern(id=f'pattern-{len(self.patterns) + 1}', name=name, description=description,
                               template=template))
        edge = {'memory_id': memory_id, 'pattern': name}
        if edge not in self.pattern_edges:
            self.pattern_edges.append(edge)
            pattern.success_count += 1
        return QueryPattern(**vars(pattern))

    def list_query_patterns(self, limit: int = 20) -> List[QueryPattern]:
        self._call('list_query_patterns')
        patterns = sorted(self.patterns.values(), key=lambda pattern: pattern.total_usage, reverse=True)
        return patterns[:limit]

    def save_evaluation(self, record: EvaluationRecord) -> bool:
        self._call('save_evaluation')
        if record.interaction_id in self.evaluations:
            return False
        self.evaluations[record.interaction_id] = record
        return True

    def list_evaluations(self, limit: Optional[int] = None) -> List[EvaluationRecord]:
        self._call('list_evaluations')
        records = sorted(self.evaluations.values(), key=lambda record: record.created_at)
        return records[:limit] if limit else records

    def create_similarity_edge(self, source_id: str, target_id: str, similarity: float) -> bool:
        self._call('create_similarity_edge')
        if any(e['source'] == source_id and e['target'] == target_id for e in self.similarity_edges):
            return False
        self.similarity_edges.append({'source': source_id, 'target': target_id, 'similarity': similarity})
        return True

    def compute_learning_stats(self) -> RollingStatistics:
        self._call('compute_learning_stats')
        scores = [memory.overall_score for memory in self.memories.values()]
        return RollingStatistics(total_memories=len(scores),
                                 avg_overall_score=sum(scores) / len(scores) if scores else 0.0,
                                 total_patterns=len(self.patterns))

    def save_learning_stats(self, stats: RollingStatistics) -> None:
        self._call('save_learning_stats')
        self.stats = stats

    def get_learning_stats(self) -> Optional[RollingStatistics]:
        self._call('get_learning_stats')
        return self.stats

    def health_check(self) -> bool:
        return True


GOOD_JUDGMENT = {
    'grounding': 0.9,
    'accuracy': 0.9,
    'completeness': 0.8,
    'pedagogy': 0.9,
    'clarity': 1.0,
    'strengths': ['Every objective is cited'],
    'weaknesses': ['Could mention the strand'],
    'suggestions': ['Link to the related strand'],
}


@pytest.fixture
def embed():
    return FakeEmbed()


@pytest.fixture
def llm():
    return FakeLLM(dict(GOOD_JUDGMENT))


@pytest.fixture
def opensearch():
    return FakeOpenSearch()


@pytest.fixture
def neptune():
    graph = FakeNeptune()
    graph.add_node('Obj-Y3-Fractions-1')
    graph.add_node('Obj-Y3-Fractions-2')
    graph.add_node('Strand-Fractions', label='Strand')
    return graph


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def writer(neptune, opensearch, embed):
    return MemoryWriter(neptune, opensearch, embed, dimension=DIMENSION, inherit_evidence=True, inherit_min_similarity=0.8)


@pytest.fixture
def coordinator(bus, llm, writer, neptune, opensearch):
    pipeline = PipelineCoordinator(bus,
                                   evaluator=RubricEvaluator(llm),
                                   writer=writer,
                                   pattern_extractor=PatternExtractor(neptune, min_score=0.8),
                                   similarity_linker=SimilarityLinker(neptune, opensearch, threshold=0.8, limit=5),
                                   statistics=StatisticsAggregator(neptune),
                                   recorder=EvaluationRecorder(neptune),
                                   attempts=3,
                                   retry_delay=0)
    pipeline.register()
    return pipeline
