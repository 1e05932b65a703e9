"""
Similarity Retriever: few-shot priming from similar high-quality memories.
"""

import json
from typing import List, Optional

from ..models.core import Memory
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient

logger = get_logger(__name__)

ANSWER_EXCERPT_LENGTH = 200


class SimilarityRetriever:
    """Find past memories similar to a new question, for priming the answer.

    This sits on the latency-sensitive request path: one best-effort attempt,
    and any failure yields no memories rather than an error.
    """

    def __init__(self,
                 embed: Optional[BedrockEmbed] = None,
                 opensearch: Optional[OpenSearchClient] = None,
                 min_score: Optional[float] = None,
                 default_limit: Optional[int] = None):
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.min_score = config.pipeline.retrieval_min_score if min_score is None else min_score
        self.default_limit = default_limit or config.pipeline.retrieval_limit

        logger.info('Initialized SimilarityRetriever')

    def retrieve(self, question: str, limit: Optional[int] = None) -> List[Memory]:
        """Return up to ``limit`` memories above the quality threshold, most similar first.

        Args:
            question: The user's question
            limit: Maximum number of memories (default 3)

        Returns:
            Memories with ``similarity`` set, or an empty list on any failure
        """
        if not question or not question.strip():
            logger.warning('Empty question provided for memory retrieval')
            return []

        limit = limit or self.default_limit

        try:
            embedding = self.embed.embed(question)
            results = self.opensearch.knn_search(embedding, top_k=limit)
        except Exception as e:
            logger.error(f'Memory retrieval failed for question {question[:100]!r}: {e}')
            return []

        memories = []
        for result in results:
            try:
                doc = result.get('document') or {}
                # Unreadable scores count as below the threshold
                if float(doc.get('overall_score', 0.0)) <= self.min_score:
                    continue
                memories.append(Memory.from_document({'id': result.get('id'), **doc}, similarity=result['similarity']))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f'Skipping unreadable memory row {result.get("id")}: {e}')

        memories.sort(key=lambda memory: memory.similarity, reverse=True)
        logger.info(f'Retrieved {len(memories)} similar memories (score > {self.min_score})')
        return memories[:limit]


def _strengths(evaluator_notes: str) -> str:
    try:
        notes = json.loads(evaluator_notes)
    except (TypeError, ValueError):
        return evaluator_notes
    strengths = notes.get('strengths') if isinstance(notes, dict) else None
    if isinstance(strengths, list):
        return f"Strengths: {', '.join(strengths)}"
    return evaluator_notes


def format_priming_examples(memories: List[Memory]) -> str:
    """Render memories as few-shot examples for the answering prompt."""
    if not memories:
        return ('No similar past interactions available yet. This is a new type of query - '
                'approach it carefully by exploring the graph schema.')

    examples = []
    for index, memory in enumerate(memories):
        query = memory.graph_queries[0] if memory.graph_queries else 'No graph query recorded'
        answer = memory.answer
        if len(answer) > ANSWER_EXCERPT_LENGTH:
            answer = answer[:ANSWER_EXCERPT_LENGTH] + '...'

        examples.append(f"""## Example {index + 1} (Quality Score: {memory.overall_score:.2f})

**User Query**: "{memory.question}"

**Query Used**:
```cypher
{query}
```

**Answer** (excerpt):
"{answer}"

**Why This Worked**: {_strengths(memory.evaluator_notes)}

**Key Takeaways**:
- Grounding: {memory.grounding_score:.2f}
- Accuracy: {memory.accuracy_score:.2f}
""")

    return '\n---\n\n'.join(examples)
