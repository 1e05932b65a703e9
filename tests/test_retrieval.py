from conftest import search_hit

from learnloop.models.core import Memory
from learnloop.services.retrieval import SimilarityRetriever, format_priming_examples

QUESTION = 'What fractions do Year 3 students learn?'


def test_returns_similar_high_quality_memories_most_similar_first(embed, opensearch):
    opensearch.canned = [
        search_hit('memory-b', similarity=0.79, overall=0.88),
        search_hit('memory-a', similarity=0.82, overall=0.85),
    ]
    retriever = SimilarityRetriever(embed, opensearch, min_score=0.75, default_limit=3)

    memories = retriever.retrieve(QUESTION, limit=3)

    assert [memory.id for memory in memories] == ['memory-a', 'memory-b']
    assert memories[0].similarity == 0.82
    assert memories[1].similarity == 0.79
    assert memories[0].overall_score == 0.85


def test_drops_memories_at_or_below_quality_threshold(embed, opensearch):
    opensearch.canned = [
        search_hit('memory-good', similarity=0.70, overall=0.90),
        search_hit('memory-edge', similarity=0.95, overall=0.75),
        search_hit('memory-poor', similarity=0.99, overall=0.40),
    ]
    retriever = SimilarityRetriever(embed, opensearch, min_score=0.75, default_limit=3)

    assert [memory.id for memory in retriever.retrieve(QUESTION)] == ['memory-good']


def test_unreadable_quality_scores_are_skipped(embed, opensearch):
    opensearch.canned = [
        search_hit('memory-null', similarity=0.9, overall=None),
        search_hit('memory-text', similarity=0.88, overall='high'),
        search_hit('memory-good', similarity=0.85, overall=0.9),
    ]
    retriever = SimilarityRetriever(embed, opensearch, min_score=0.75, default_limit=3)

    assert [memory.id for memory in retriever.retrieve('What fractions?')] == ['memory-good']

    opensearch.canned = [search_hit('memory-null', similarity=0.9, overall=None)]
    assert retriever.retrieve('What fractions?') == []


def test_failures_yield_no_memories(embed, opensearch):
    retriever = SimilarityRetriever(embed, opensearch, min_score=0.75, default_limit=3)

    opensearch.fail('knn_search')
    assert retriever.retrieve(QUESTION) == []

    embed.fail('embed')
    assert retriever.retrieve(QUESTION) == []
    assert retriever.retrieve('   ') == []


def test_priming_examples_show_query_excerpt_and_strengths():
    memory = Memory.from_document(search_hit('memory-a', 0.82, 0.85, answer='x' * 250)['document'], similarity=0.82)

    text = format_priming_examples([memory])

    assert '## Example 1 (Quality Score: 0.85)' in text
    assert 'MATCH (o:Objective) RETURN o' in text
    assert '"' + 'x' * 200 + '..."' in text
    assert 'Strengths: Cited objectives' in text


def test_priming_without_memories_explains_new_query():
    assert 'No similar past interactions' in format_priming_examples([])
