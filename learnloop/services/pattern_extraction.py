"""
Pattern Extractor: learn reusable query shapes from high-quality memories.
"""

import re
from typing import Optional

from ..models.core import Interaction, Memory, QueryPattern
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient

logger = get_logger(__name__)

UNKNOWN_PATTERN = 'unknown_pattern'
DESCRIPTION_QUESTION_LENGTH = 100

_MATCH_CLAUSE = re.compile(r'\b(?:OPTIONAL\s+)?MATCH\s+', re.IGNORECASE)
# Clause keywords end the pattern; labels such as ":Order" are preceded by a colon
_NEXT_CLAUSE = re.compile(
    r'(?<!:)\b(?:WHERE|RETURN|WITH|MATCH|OPTIONAL|UNWIND|CALL|CREATE|MERGE|ORDER|LIMIT|SKIP|SET|DELETE|DETACH|YIELD)\b',
    re.IGNORECASE)
_PROPERTY_MAP = re.compile(r'\{[^{}]*\}')
_SPACE_AROUND_PUNCTUATION = re.compile(r'\s*([:\-\[\]<>,.*|])\s*')


def canonicalize_query(query: str) -> str:
    """
    Reduce a graph query to the canonical key of its first match pattern.

    Property maps and their literals are dropped, node parentheses removed,
    whitespace normalised and the result lowercased, so queries that differ
    only in literal values share one key.

    Examples:
        ``MATCH (o:Objective {year: 3}) RETURN o`` -> ``o:objective``
        ``MATCH (o:Objective)-[:PART_OF]->(s:Strand)`` -> ``o:objective-[:part_of]->s:strand``

    Returns:
        The canonical key, or ``unknown_pattern`` if the query has no match clause
    """
    if not query:
        return UNKNOWN_PATTERN

    start = _MATCH_CLAUSE.search(query)
    if not start:
        return UNKNOWN_PATTERN

    # Innermost maps first, until nested maps are gone too
    rest = query[start.end():]
    stripped = _PROPERTY_MAP.sub('', rest)
    while stripped != rest:
        rest, stripped = stripped, _PROPERTY_MAP.sub('', stripped)
    end = _NEXT_CLAUSE.search(rest)
    pattern = rest[:end.start()] if end else rest

    pattern = pattern.replace('(', ' ').replace(')', ' ')
    pattern = _SPACE_AROUND_PUNCTUATION.sub(r'\1', pattern.strip())
    pattern = re.sub(r'\s+', '_', pattern).lower()

    return pattern or UNKNOWN_PATTERN


class PatternExtractor:
    """Record the query shape of well-rated memories as QueryPatterns."""

    def __init__(self, neptune: Optional[NeptuneClient] = None, min_score: Optional[float] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.min_score = config.pipeline.pattern_min_score if min_score is None else min_score

    def extract(self, memory: Memory, interaction: Interaction, overall: float) -> Optional[QueryPattern]:
        """
        Upsert the pattern of the interaction's first query and link the memory to it.

        Skipped when ``overall`` does not exceed the threshold, when no query
        was executed, or when the query has no recognisable match clause.
        Failures are logged and never propagate.

        Returns:
            The updated QueryPattern, or None if nothing was recorded
        """
        if overall <= self.min_score:
            logger.debug(f'Score {overall:.3f} below pattern threshold {self.min_score}, skipping extraction')
            return None

        if not interaction.graph_queries:
            logger.debug(f'No graph queries for memory {memory.id}, skipping extraction')
            return None

        template = interaction.graph_queries[0]
        name = canonicalize_query(template)
        if name == UNKNOWN_PATTERN:
            logger.info(f'No match pattern in first query of memory {memory.id}, skipping extraction')
            return None

        description = f'Pattern for query type: {interaction.question[:DESCRIPTION_QUESTION_LENGTH]}...'

        try:
            pattern = self.neptune.upsert_query_pattern(memory.id, name, description, template)
        except Exception as e:
            logger.error(f'Pattern extraction failed for memory {memory.id} (non-critical): {e}')
            return None

        logger.info(f'Recorded query pattern {name} (successes: {pattern.success_count})')
        return pattern
