import pytest
from conftest import DIMENSION, FakeEmbed

from learnloop.models.core import Evaluation, Interaction
from learnloop.services.memory_writer import MemoryWriteError, MemoryWriter, memory_id_for


def _interaction(**kwargs):
    defaults = dict(question='What fractions do Year 3 students learn?',
                    answer='Unit fractions [Obj-Y3-Fractions-1] and non-unit fractions [Obj-Y3-Fractions-2].',
                    graph_queries=['MATCH (o:Objective {year: 3}) RETURN o'],
                    evidence_node_ids=['Obj-Y3-Fractions-1', 'Obj-Y3-Fractions-2'])
    defaults.update(kwargs)
    return Interaction(**defaults)


def test_write_persists_memory_in_graph_and_index(writer, neptune, opensearch):
    interaction = _interaction()
    evaluation = Evaluation(0.9, 0.9, 0.8, 0.9, 1.0, strengths=['Cited'])

    memory = writer.write(interaction, evaluation)

    assert memory.id == memory_id_for(interaction.interaction_id)
    assert memory.overall_score == pytest.approx(0.89)
    assert len(memory.embedding) == DIMENSION
    assert neptune.memories[memory.id].question == interaction.question
    assert opensearch.documents[memory.id]['embedding'] == memory.embedding


def test_write_without_evaluation_uses_defaults(writer):
    memory = writer.write(_interaction())
    assert memory.overall_score == pytest.approx(0.5)
    assert 'Automatic evaluation failed' in memory.evaluator_notes


def test_rewriting_same_interaction_creates_one_memory(writer, neptune, opensearch):
    interaction = _interaction()

    first = writer.write(interaction)
    second = writer.write(interaction)

    assert first.id == second.id
    assert len(neptune.memories) == 1
    assert len(opensearch.documents) == 1


def test_dimension_mismatch_is_rejected_before_any_write(neptune, opensearch):
    writer = MemoryWriter(neptune, opensearch, FakeEmbed(dimension=DIMENSION + 1), dimension=DIMENSION)

    with pytest.raises(MemoryWriteError):
        writer.write(_interaction())

    assert neptune.memories == {}
    assert opensearch.documents == {}


def test_store_failure_raises_memory_write_error(writer, neptune):
    neptune.fail('create_memory_vertex')
    with pytest.raises(MemoryWriteError):
        writer.write(_interaction())


def test_link_evidence_skips_missing_nodes(writer, neptune):
    interaction = _interaction(evidence_node_ids=['Obj-Y3-Fractions-1', 'Obj-Missing', 'Obj-Y3-Fractions-1'])
    memory = writer.write(interaction)

    result = writer.link_evidence(memory, interaction)

    assert result.linked == ['Obj-Y3-Fractions-1']
    assert result.skipped == ['Obj-Missing']
    assert neptune.evidence_edges == [{'memory_id': memory.id, 'node_id': 'Obj-Y3-Fractions-1', 'inherited': False}]

    writer.link_evidence(memory, interaction)
    assert len(neptune.evidence_edges) == 1


def test_uncited_memory_inherits_evidence_of_most_similar_memory(writer, neptune, embed):
    embed.vectors['What fractions do Year 3 students learn?'] = [1.0, 0.0, 0.0, 0.0]
    embed.vectors['Which fractions are taught in Year 3?'] = [0.95, 0.05, 0.0, 0.0]

    prior = _interaction()
    prior_memory = writer.write(prior)
    writer.link_evidence(prior_memory, prior)

    uncited = _interaction(question='Which fractions are taught in Year 3?', answer='Unit fractions.', evidence_node_ids=[])
    memory = writer.write(uncited)
    result = writer.link_evidence(memory, uncited)

    assert result.inherited_from == prior_memory.id
    assert sorted(result.linked) == ['Obj-Y3-Fractions-1', 'Obj-Y3-Fractions-2']
    inherited = [edge for edge in neptune.evidence_edges if edge['memory_id'] == memory.id]
    assert all(edge['inherited'] for edge in inherited)


def test_uncited_memory_does_not_inherit_from_unrelated_memory(writer, neptune, embed):
    embed.vectors['What fractions do Year 3 students learn?'] = [1.0, 0.0, 0.0, 0.0]
    embed.vectors['How do magnets attract?'] = [0.0, 0.0, 1.0, 0.0]

    prior = _interaction()
    writer.link_evidence(writer.write(prior), prior)

    uncited = _interaction(question='How do magnets attract?', answer='Opposite poles attract.', evidence_node_ids=[])
    memory = writer.write(uncited)
    result = writer.link_evidence(memory, uncited)

    assert result.inherited_from is None
    assert result.linked == []
    assert [edge for edge in neptune.evidence_edges if edge['memory_id'] == memory.id] == []


def test_inheritance_can_be_disabled(neptune, opensearch, embed):
    writer = MemoryWriter(neptune, opensearch, embed, dimension=DIMENSION, inherit_evidence=False)
    prior = _interaction()
    writer.link_evidence(writer.write(prior), prior)

    uncited = _interaction(question='Another question', evidence_node_ids=[])
    result = writer.link_evidence(writer.write(uncited), uncited)

    assert result.linked == []
    assert result.inherited_from is None


def test_link_evidence_failure_raises_memory_write_error(writer, neptune):
    interaction = _interaction()
    memory = writer.write(interaction)
    neptune.fail('create_evidence_edge')

    with pytest.raises(MemoryWriteError):
        writer.link_evidence(memory, interaction)
