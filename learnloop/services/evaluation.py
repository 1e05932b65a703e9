"""
Rubric Evaluator: LLM-as-judge scoring of finished interactions, and the stored
evaluation records behind the learning curve.
"""

import json
import numbers
from typing import Any, Dict, List, Optional

from ..models.core import RUBRIC_DIMENSIONS, Evaluation, EvaluationRecord, Interaction
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient

logger = get_logger(__name__)

MAX_GRAPH_RESULTS_CHARS = 8000
MAX_FEEDBACK_ITEMS = 5
MAX_FEEDBACK_CHARS = 500

SYSTEM_PROMPT = ('You are an expert curriculum evaluator assessing the quality of an AI assistant\'s response '
                 'to a curriculum-related question. You answer with a single JSON object and nothing else.')

RUBRIC = """# Evaluation Instructions

You must evaluate the assistant's answer on 5 dimensions, scoring each from 0.0 to 1.0.
Your evaluation should be **evidence-based**: Compare the answer directly to the graph results provided.

## 1. Grounding (30% weight)

**Definition**: How well are the assistant's claims supported by the graph results?

- **1.0**: Every claim has clear, direct support in the graph results. All citations are accurate.
- **0.8**: Most major claims supported, but some minor details lack direct evidence.
- **0.6**: Several claims lack clear graph support, some speculation present.
- **0.4**: Significant unsupported claims, more speculation than evidence.
- **0.2**: Very little graph support, mostly fabricated or assumed information.
- **0.0**: Completely fabricated answer with no relation to graph data.

## 2. Accuracy (30% weight)

**Definition**: Is the information factually correct according to the curriculum as represented in the graph?

- **1.0**: All information is completely accurate.
- **0.8**: Accurate overall, minor imprecisions in phrasing or non-critical details.
- **0.6**: Generally accurate but contains a noticeable error or misrepresentation.
- **0.4**: Several significant factual errors that misrepresent the curriculum.
- **0.2**: Fundamentally incorrect information.
- **0.0**: Completely incorrect information throughout.

## 3. Completeness (20% weight)

**Definition**: How fully does the answer address all aspects of the user's question?

- **1.0**: Comprehensive, addresses all aspects including implicit sub-questions.
- **0.8**: Covers all main aspects, some could be more thorough.
- **0.6**: Answers the core question but misses some relevant aspects.
- **0.4**: Incomplete, misses several important aspects.
- **0.2**: Barely touches on what was asked.
- **0.0**: Doesn't answer the question at all.

## 4. Pedagogy (10% weight)

**Definition**: Is the answer framed appropriately for educators working with curriculum materials?

- **1.0**: Excellent framing, deep understanding of curriculum progression and educational context.
- **0.8**: Good pedagogical sense, appropriate for educators.
- **0.6**: Basic pedagogical awareness, somewhat generic.
- **0.4**: Lacks curriculum context, doesn't consider educational usage.
- **0.2**: Poor framing, misses educational context.
- **0.0**: Completely inappropriate or harmful pedagogical approach.

## 5. Clarity (10% weight)

**Definition**: How clear, well-structured, and easy to understand is the answer?

- **1.0**: Crystal clear, perfectly structured.
- **0.8**: Clear overall, well-structured with minor areas that could be clearer.
- **0.6**: Adequately clear but could be better organized.
- **0.4**: Confusing in places, poor organization.
- **0.2**: Very unclear, major comprehension difficulties.
- **0.0**: Completely unclear or contradictory.

Intermediate values (e.g. 0.7, 0.9) are allowed.

## Qualitative Feedback

Provide up to 3 specific **strengths**, 3 specific **weaknesses** and 3 actionable **suggestions**,
each referencing concrete parts of the answer.

# Output Format

Provide your evaluation as a JSON object with this exact structure:

{
  "grounding": <score 0.0-1.0>,
  "accuracy": <score 0.0-1.0>,
  "completeness": <score 0.0-1.0>,
  "pedagogy": <score 0.0-1.0>,
  "clarity": <score 0.0-1.0>,
  "strengths": ["strength 1", "strength 2", "strength 3"],
  "weaknesses": ["weakness 1", "weakness 2", "weakness 3"],
  "suggestions": ["suggestion 1", "suggestion 2", "suggestion 3"]
}"""


class EvaluationError(Exception):
    """Raised when a judgment model response does not match the rubric schema."""
    pass


def _format_queries(queries: List[str]) -> str:
    if not queries:
        return '(No graph queries were executed)'
    return '\n\n'.join(f'Query {index + 1}:\n```cypher\n{query}\n```' for index, query in enumerate(queries))


def _format_graph_results(results: List[Dict[str, Any]]) -> str:
    if not results:
        return '(No graph results were returned)'

    text = json.dumps(results, indent=2, default=str)
    if len(text) > MAX_GRAPH_RESULTS_CHARS:
        return f'```json\n{text[:MAX_GRAPH_RESULTS_CHARS]}\n... (truncated, {len(results)} total results)\n```'
    return f'```json\n{text}\n```'


def build_evaluation_prompt(interaction: Interaction) -> str:
    """Build the judge prompt for one interaction, rubric included."""
    return f"""Your task is to evaluate how well the assistant answered the question based on the actual graph data it retrieved.

# User's Question
"{interaction.question}"

# Assistant's Answer
{interaction.answer}

# Graph Queries Used
{_format_queries(interaction.graph_queries)}

# Graph Results Retrieved
{_format_graph_results(interaction.graph_results)}

{RUBRIC}

Now evaluate the interaction based on this rubric."""  # noqa: E501


def _score(data: Dict[str, Any], name: str) -> float:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise EvaluationError(f'Score {name!r} is not a number: {value!r}')
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise EvaluationError(f'Score {name!r} out of range: {value}')
    return value


def _feedback(data: Dict[str, Any], name: str) -> List[str]:
    value = data.get(name, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise EvaluationError(f'Feedback {name!r} is not a list of strings')
    return [item[:MAX_FEEDBACK_CHARS] for item in value[:MAX_FEEDBACK_ITEMS]]


def parse_evaluation(data: Dict[str, Any]) -> Evaluation:
    """
    Validate a judge response against the rubric schema.

    Any ``overall`` value supplied by the model is ignored.

    Raises:
        EvaluationError: If a score is missing, not numeric or outside [0, 1],
            or a feedback field is not a list of strings
    """
    scores = {name: _score(data, name) for name in RUBRIC_DIMENSIONS}
    return Evaluation(strengths=_feedback(data, 'strengths'),
                      weaknesses=_feedback(data, 'weaknesses'),
                      suggestions=_feedback(data, 'suggestions'),
                      **scores)


class RubricEvaluator:
    """Score an interaction against the weighted five-dimension rubric."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        logger.info('Initialized RubricEvaluator')

    def evaluate(self, interaction: Interaction) -> Evaluation:
        """
        Evaluate an interaction.

        Never raises: a failing or malformed judge response yields
        ``Evaluation.default()`` so the pipeline always advances.
        """
        try:
            response = self.llm.generate_json(build_evaluation_prompt(interaction), SYSTEM_PROMPT)
            evaluation = parse_evaluation(response)
        except EvaluationError as e:
            logger.warning(f'Malformed evaluation for interaction {interaction.interaction_id}, using defaults: {e}')
            return Evaluation.default('Evaluation response was malformed, using default scores')
        except Exception as e:
            logger.error(f'Evaluation failed for interaction {interaction.interaction_id}, using defaults: {e}')
            return Evaluation.default()

        logger.info(f'Evaluated interaction {interaction.interaction_id}: '
                    f'grounding={evaluation.grounding:.2f} accuracy={evaluation.accuracy:.2f} '
                    f'overall={evaluation.overall:.3f}')
        return evaluation


class EvaluationRecorder:
    """Keep one stored evaluation per interaction for the dashboard's learning curve."""

    def __init__(self, neptune: Optional[NeptuneClient] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)

    def record(self, interaction: Interaction, evaluation: Evaluation) -> Optional[EvaluationRecord]:
        """Store the evaluation. Returns None on any failure (non-critical)."""
        record = EvaluationRecord(interaction_id=interaction.interaction_id, evaluation=evaluation)
        try:
            self.neptune.save_evaluation(record)
        except Exception as e:
            logger.error(f'Failed to save evaluation for interaction {interaction.interaction_id} (non-critical): {e}')
            return None

        logger.debug(f'Saved evaluation {record.id} (overall={evaluation.overall:.3f})')
        return record
