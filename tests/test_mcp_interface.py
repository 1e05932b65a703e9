import pytest
from conftest import search_hit

from learnloop import mcp_interface
from learnloop.services.memory_writer import memory_id_for
from learnloop.utils.health_check import check_health, get_health_status


def _call(tool, *args, **kwargs):
    # Registered tools wrap the plain function
    return getattr(tool, 'fn', tool)(*args, **kwargs)


@pytest.fixture
def services(monkeypatch, neptune, opensearch, embed, bus, coordinator):
    registry = {'neptune': neptune, 'opensearch': opensearch, 'embed': embed, 'bus': bus}
    monkeypatch.setattr(mcp_interface, '_services', registry)
    return registry


def test_record_interaction_runs_pipeline_on_in_memory_bus(services, neptune):
    result = _call(mcp_interface.record_interaction,
                   question='What fractions do Year 3 students learn?',
                   answer='Unit fractions [Obj-Y3-Fractions-1].',
                   graph_queries=['MATCH (o:Objective {year: 3}) RETURN o'],
                   interaction_id='interaction-42')

    assert result == {'interaction_id': 'interaction-42', 'event_id': 'interaction.finished:interaction-42'}
    memory_id = memory_id_for('interaction-42')
    assert memory_id in neptune.memories
    assert neptune.evidence_edges == [{'memory_id': memory_id, 'node_id': 'Obj-Y3-Fractions-1', 'inherited': False}]

    stats = _call(mcp_interface.get_learning_stats)
    assert stats['total_memories'] == 1
    assert stats['total_patterns'] == 1
    assert _call(mcp_interface.list_query_patterns)[0]['name'] == 'o:objective'
    assert _call(mcp_interface.list_recent_memories)[0]['id'] == memory_id


def test_list_evaluations_follows_recorded_interactions(services):
    for index in range(2):
        _call(mcp_interface.record_interaction,
              question=f'What fractions do Year {index + 3} students learn?',
              answer='Unit fractions [Obj-Y3-Fractions-1].',
              interaction_id=f'interaction-{index}')

    evaluations = _call(mcp_interface.list_evaluations)

    assert [row['interaction_id'] for row in evaluations] == ['interaction-0', 'interaction-1']
    assert evaluations[0]['id'] == 'evaluation-interaction-0'
    assert evaluations[0]['overall'] == pytest.approx(0.89)
    assert [row['id'] for row in _call(mcp_interface.list_evaluations, limit=1)] == ['evaluation-interaction-0']


def test_record_interaction_requires_question(services):
    with pytest.raises(ValueError):
        _call(mcp_interface.record_interaction, question=' ', answer='a')


def test_retrieve_similar_memories(services, opensearch):
    opensearch.canned = [search_hit('memory-a', similarity=0.82, overall=0.85)]

    result = _call(mcp_interface.retrieve_similar_memories, 'What fractions do Year 3 students learn?')

    assert [memory['id'] for memory in result['memories']] == ['memory-a']
    assert 'Example 1' in result['priming_examples']


def test_health_reports_configuration_and_existing_clients(services):
    info = _call(mcp_interface.health)

    assert info['service_name'] == 'learnloop'
    assert info['configuration']['event_bus_backend'] == mcp_interface.config.event_bus.backend
    assert 'retrieval_min_score' in info['configuration']
    status = info['health_status']
    assert set(status) == {'neptune', 'opensearch', 'bedrock_embed', 'event_bus'}
    assert status['neptune']['healthy']
    assert status['opensearch']['healthy']
    assert status['event_bus']['healthy']


class _Unhealthy:
    def health_check(self):
        return False


def test_health_status_reports_unhealthy_components(neptune, opensearch, embed, bus, llm):
    clients = {'neptune': neptune, 'opensearch': opensearch, 'bedrock_embed': embed, 'event_bus': bus,
               'bedrock_llm': llm}
    assert check_health(clients)

    clients['neptune'] = _Unhealthy()
    status = get_health_status(clients)
    assert status['neptune']['healthy'] is False
    assert status['neptune']['service'] == 'Amazon Neptune'
    assert status['opensearch']['healthy'] is True
    assert not check_health(clients)
