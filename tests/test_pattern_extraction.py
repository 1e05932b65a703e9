import pytest

from learnloop.models.core import Evaluation, Interaction
from learnloop.services.pattern_extraction import UNKNOWN_PATTERN, PatternExtractor, canonicalize_query


@pytest.mark.parametrize('query, expected', [
    ('MATCH (o:Objective {year: 3}) RETURN o', 'o:objective'),
    ('MATCH (o:Objective)-[:PART_OF]->(s:Strand) RETURN o, s', 'o:objective-[:part_of]->s:strand'),
    ("match (o:Objective {title: 'Fractions'})\nWHERE o.year = 3 RETURN o", 'o:objective'),
    ('OPTIONAL MATCH (u:Unit {id: "U-1"})-[:HAS_LESSON]->(l:Lesson) RETURN l', 'u:unit-[:has_lesson]->l:lesson'),
    ('MATCH (o:Objective {meta: {year: 3}}) RETURN o', 'o:objective'),
    ('MATCH (u:Unit {tags: {a: {b: 1}}})-[:HAS_LESSON {order: {n: 1}}]->(l:Lesson) RETURN l',
     'u:unit-[:has_lesson]->l:lesson'),
    ('RETURN 1', UNKNOWN_PATTERN),
    ('', UNKNOWN_PATTERN),
])
def test_canonicalize_query(query, expected):
    assert canonicalize_query(query) == expected


def test_queries_differing_only_in_literals_share_a_key():
    assert canonicalize_query('MATCH (o:Objective {year: 3}) RETURN o') == \
        canonicalize_query('MATCH (o:Objective {year: 5}) RETURN o')


def _memory_for(writer, query, question='What fractions do Year 3 students learn?'):
    interaction = Interaction(question=question, answer='Unit fractions.', graph_queries=[query] if query else [])
    return writer.write(interaction, Evaluation(0.9, 0.9, 0.9, 0.9, 0.9)), interaction


def test_low_score_produces_no_pattern(writer, neptune):
    memory, interaction = _memory_for(writer, 'MATCH (o:Objective {year: 3}) RETURN o')

    assert PatternExtractor(neptune, min_score=0.8).extract(memory, interaction, 0.65) is None
    assert neptune.patterns == {}
    assert 'upsert_query_pattern' not in neptune.calls


def test_high_score_records_pattern(writer, neptune):
    memory, interaction = _memory_for(writer, 'MATCH (o:Objective {year: 3}) RETURN o')

    pattern = PatternExtractor(neptune, min_score=0.8).extract(memory, interaction, 0.91)

    assert pattern.name == 'o:objective'
    assert pattern.success_count == 1
    assert pattern.template == 'MATCH (o:Objective {year: 3}) RETURN o'
    assert pattern.description == 'Pattern for query type: What fractions do Year 3 students learn?...'
    assert neptune.pattern_edges == [{'memory_id': memory.id, 'pattern': 'o:objective'}]


def test_same_shape_from_two_interactions_counts_twice(writer, neptune):
    extractor = PatternExtractor(neptune, min_score=0.8)
    first, first_interaction = _memory_for(writer, 'MATCH (o:Objective {year: 3}) RETURN o')
    second, second_interaction = _memory_for(writer, 'MATCH (o:Objective {year: 6}) RETURN o', question='Year 6?')

    extractor.extract(first, first_interaction, 0.91)
    pattern = extractor.extract(second, second_interaction, 0.95)

    assert list(neptune.patterns) == ['o:objective']
    assert pattern.success_count == 2


def test_rerun_for_same_memory_does_not_increment(writer, neptune):
    extractor = PatternExtractor(neptune, min_score=0.8)
    memory, interaction = _memory_for(writer, 'MATCH (o:Objective {year: 3}) RETURN o')

    extractor.extract(memory, interaction, 0.91)
    pattern = extractor.extract(memory, interaction, 0.91)

    assert pattern.success_count == 1


def test_no_query_or_unknown_shape_is_skipped(writer, neptune):
    extractor = PatternExtractor(neptune, min_score=0.8)

    memory, interaction = _memory_for(writer, None)
    assert extractor.extract(memory, interaction, 0.95) is None

    memory, interaction = _memory_for(writer, 'CALL db.labels()', question='Labels?')
    assert extractor.extract(memory, interaction, 0.95) is None
    assert neptune.patterns == {}


def test_store_failure_is_not_raised(writer, neptune):
    memory, interaction = _memory_for(writer, 'MATCH (o:Objective) RETURN o')
    neptune.fail('upsert_query_pattern')

    assert PatternExtractor(neptune, min_score=0.8).extract(memory, interaction, 0.95) is None
