"""
Pipeline event names and payload helpers.
"""

from typing import Any, Dict, Tuple

from .core import Evaluation, Interaction

INTERACTION_FINISHED = 'interaction.finished'
EVALUATION_FINISHED = 'evaluation.finished'


def interaction_finished_payload(interaction: Interaction) -> Dict[str, Any]:
    return {'interaction': interaction.to_dict()}


def evaluation_finished_payload(interaction: Interaction, evaluation: Evaluation) -> Dict[str, Any]:
    return {'interaction': interaction.to_dict(), 'evaluation': evaluation.to_dict()}


def parse_interaction_finished(data: Dict[str, Any]) -> Interaction:
    return Interaction.from_dict(data['interaction'])


def parse_evaluation_finished(data: Dict[str, Any]) -> Tuple[Interaction, Evaluation]:
    """Decode an evaluation event; a missing or unreadable evaluation becomes the default one."""
    interaction = Interaction.from_dict(data['interaction'])
    try:
        evaluation = Evaluation.from_dict(data['evaluation'])
    except (KeyError, TypeError, ValueError):
        evaluation = Evaluation.default('Evaluation missing from event, using default scores')
    return interaction, evaluation


def event_id_for(name: str, interaction: Interaction) -> str:
    """Deterministic event id so re-deliveries of one interaction share an id."""
    return f'{name}:{interaction.interaction_id}'
