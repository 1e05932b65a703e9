"""
Core data models for the interaction learning pipeline.
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import parse_timestamp, utc_now

# Rubric weights: grounding, accuracy, completeness, pedagogy, clarity
RUBRIC_WEIGHTS = {
    'grounding': 0.30,
    'accuracy': 0.30,
    'completeness': 0.20,
    'pedagogy': 0.10,
    'clarity': 0.10,
}
RUBRIC_DIMENSIONS = tuple(RUBRIC_WEIGHTS)

DEFAULT_SCORE = 0.5

_CITATION_PATTERN = re.compile(r'\[([^\[\]]+)\]')


def extract_citations(answer: str) -> List[str]:
    """Return the node ids cited in an answer as ``[Node-ID]``, in order, without duplicates."""
    seen = set()
    citations = []
    for match in _CITATION_PATTERN.findall(answer or ''):
        node_id = match.strip()
        if node_id and node_id not in seen:
            seen.add(node_id)
            citations.append(node_id)
    return citations


def compute_overall_score(grounding: float, accuracy: float, completeness: float, pedagogy: float,
                          clarity: float) -> float:
    """Weighted rubric score, clamped to [0, 1]."""
    scores = {
        'grounding': grounding,
        'accuracy': accuracy,
        'completeness': completeness,
        'pedagogy': pedagogy,
        'clarity': clarity,
    }
    weighted = sum(scores[name] * weight for name, weight in RUBRIC_WEIGHTS.items())
    return min(1.0, max(0.0, weighted))


@dataclass
class Interaction:
    """One finished question/answer turn, handed to the pipeline by value."""
    question: str
    answer: str
    graph_queries: List[str] = field(default_factory=list)
    evidence_node_ids: List[str] = field(default_factory=list)
    elapsed_ms: int = 0
    memories_used: List[str] = field(default_factory=list)
    graph_results: List[Dict[str, Any]] = field(default_factory=list)
    interaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'interaction_id': self.interaction_id,
            'question': self.question,
            'answer': self.answer,
            'graph_queries': list(self.graph_queries),
            'evidence_node_ids': list(self.evidence_node_ids),
            'elapsed_ms': self.elapsed_ms,
            'memories_used': list(self.memories_used),
            'graph_results': list(self.graph_results),
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Interaction':
        if not data.get('question'):
            raise ValueError('Interaction payload is missing the question')

        return cls(question=data['question'],
                   answer=data.get('answer', ''),
                   graph_queries=list(data.get('graph_queries') or []),
                   evidence_node_ids=list(data.get('evidence_node_ids') or []),
                   elapsed_ms=int(data.get('elapsed_ms') or 0),
                   memories_used=list(data.get('memories_used') or []),
                   graph_results=list(data.get('graph_results') or []),
                   interaction_id=data.get('interaction_id') or str(uuid.uuid4()),
                   created_at=parse_timestamp(data.get('created_at')) if data.get('created_at') else utc_now())


@dataclass(frozen=True)
class Evaluation:
    """Rubric scores for one interaction.

    ``overall`` is always derived from the dimension scores, never taken
    from the judgment model.
    """
    grounding: float
    accuracy: float
    completeness: float
    pedagogy: float
    clarity: float
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    is_default: bool = False

    @property
    def overall(self) -> float:
        return compute_overall_score(self.grounding, self.accuracy, self.completeness, self.pedagogy, self.clarity)

    @property
    def scores(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in RUBRIC_DIMENSIONS}

    def notes_json(self) -> str:
        """Evaluator notes as stored on a Memory."""
        return json.dumps({
            'strengths': self.strengths,
            'weaknesses': self.weaknesses,
            'suggestions': self.suggestions,
        })

    @classmethod
    def default(cls, reason: str = 'Automatic evaluation failed, using default scores') -> 'Evaluation':
        """Neutral evaluation used whenever the judgment model cannot produce one."""
        return cls(grounding=DEFAULT_SCORE,
                   accuracy=DEFAULT_SCORE,
                   completeness=DEFAULT_SCORE,
                   pedagogy=DEFAULT_SCORE,
                   clarity=DEFAULT_SCORE,
                   strengths=[],
                   weaknesses=[reason],
                   suggestions=['Review interaction manually to assess quality'],
                   is_default=True)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.scores)
        data.update({
            'overall': self.overall,
            'strengths': list(self.strengths),
            'weaknesses': list(self.weaknesses),
            'suggestions': list(self.suggestions),
            'is_default': self.is_default,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Evaluation':
        # 'overall' is ignored on purpose: it is recomputed from the dimensions
        return cls(grounding=float(data['grounding']),
                   accuracy=float(data['accuracy']),
                   completeness=float(data['completeness']),
                   pedagogy=float(data['pedagogy']),
                   clarity=float(data['clarity']),
                   strengths=list(data.get('strengths') or []),
                   weaknesses=list(data.get('weaknesses') or []),
                   suggestions=list(data.get('suggestions') or []),
                   is_default=bool(data.get('is_default', False)))


@dataclass
class EvaluationRecord:
    """A stored evaluation, one per interaction; points on the learning curve."""
    interaction_id: str
    evaluation: Evaluation
    created_at: datetime = field(default_factory=utc_now)

    @property
    def id(self) -> str:
        return f'evaluation-{self.interaction_id}'

    def to_dict(self) -> Dict[str, Any]:
        data = self.evaluation.to_dict()
        data.update({
            'id': self.id,
            'interaction_id': self.interaction_id,
            'created_at': self.created_at.isoformat(),
        })
        return data


@dataclass
class Memory:
    """Durable record of one evaluated interaction, used to prime future answers."""
    id: str
    question: str
    answer: str
    graph_queries: List[str]
    embedding: List[float]
    grounding_score: float
    accuracy_score: float
    completeness_score: float
    pedagogy_score: float
    clarity_score: float
    overall_score: float
    evaluator_notes: str
    memories_used: List[str] = field(default_factory=list)
    evidence_node_ids: List[str] = field(default_factory=list)
    interaction_id: str = ''
    created_at: datetime = field(default_factory=utc_now)
    similarity: Optional[float] = None  # Only set on retrieval

    @classmethod
    def from_interaction(cls, memory_id: str, interaction: Interaction, evaluation: Evaluation,
                         embedding: List[float]) -> 'Memory':
        return cls(id=memory_id,
                   question=interaction.question,
                   answer=interaction.answer,
                   graph_queries=list(interaction.graph_queries),
                   embedding=list(embedding),
                   grounding_score=evaluation.grounding,
                   accuracy_score=evaluation.accuracy,
                   completeness_score=evaluation.completeness,
                   pedagogy_score=evaluation.pedagogy,
                   clarity_score=evaluation.clarity,
                   overall_score=evaluation.overall,
                   evaluator_notes=evaluation.notes_json(),
                   memories_used=list(interaction.memories_used),
                   evidence_node_ids=list(interaction.evidence_node_ids),
                   interaction_id=interaction.interaction_id,
                   created_at=interaction.created_at)

    def to_document(self) -> Dict[str, Any]:
        """Vector index document (embedding included)."""
        return {
            'id': self.id,
            'interaction_id': self.interaction_id,
            'question': self.question,
            'answer': self.answer,
            'graph_queries': list(self.graph_queries),
            'grounding_score': self.grounding_score,
            'accuracy_score': self.accuracy_score,
            'completeness_score': self.completeness_score,
            'pedagogy_score': self.pedagogy_score,
            'clarity_score': self.clarity_score,
            'overall_score': self.overall_score,
            'evaluator_notes': self.evaluator_notes,
            'memories_used': list(self.memories_used),
            'evidence_node_ids': list(self.evidence_node_ids),
            'embedding': list(self.embedding),
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any], similarity: Optional[float] = None) -> 'Memory':
        """Build a Memory from an index document or a flattened graph row."""
        queries = doc.get('graph_queries') or []
        if isinstance(queries, str):
            queries = json.loads(queries)
        memories_used = doc.get('memories_used') or []
        if isinstance(memories_used, str):
            memories_used = json.loads(memories_used)
        evidence = doc.get('evidence_node_ids') or []
        if isinstance(evidence, str):
            evidence = json.loads(evidence)

        return cls(id=doc.get('id', ''),
                   question=doc.get('question', ''),
                   answer=doc.get('answer', ''),
                   graph_queries=list(queries),
                   embedding=list(doc.get('embedding') or []),
                   grounding_score=float(doc.get('grounding_score', 0.0)),
                   accuracy_score=float(doc.get('accuracy_score', 0.0)),
                   completeness_score=float(doc.get('completeness_score', 0.0)),
                   pedagogy_score=float(doc.get('pedagogy_score', 0.0)),
                   clarity_score=float(doc.get('clarity_score', 0.0)),
                   overall_score=float(doc.get('overall_score', 0.0)),
                   evaluator_notes=doc.get('evaluator_notes', ''),
                   memories_used=list(memories_used),
                   evidence_node_ids=list(evidence),
                   interaction_id=doc.get('interaction_id', ''),
                   created_at=parse_timestamp(doc.get('created_at')),
                   similarity=similarity)


@dataclass
class QueryPattern:
    """Canonical, parameter-stripped shape of a successful graph query."""
    id: str
    name: str
    description: str
    template: str
    success_count: int = 0
    failure_count: int = 0

    @property
    def total_usage(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        """Percentage of successful uses, 0 when unused."""
        if self.total_usage == 0:
            return 0.0
        return self.success_count / self.total_usage * 100


@dataclass
class SimilarityLink:
    """Directed, weighted edge between two similar memories."""
    source_id: str
    target_id: str
    similarity: float


@dataclass
class RollingStatistics:
    """Cached aggregate record read by the dashboard."""
    total_memories: int
    avg_overall_score: float
    total_patterns: int
    last_updated: datetime = field(default_factory=utc_now)
