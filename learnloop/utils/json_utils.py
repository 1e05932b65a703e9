"""
JSON utilities for cleaning and decoding judgment model responses.
"""

import json
from typing import Any, Dict


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_object(response: str) -> Dict[str, Any]:
    """Decode the first JSON object found in a model response.

    Models sometimes wrap the object in prose; everything outside the
    outermost braces is ignored.

    Raises:
        ValueError: If no JSON object can be decoded
    """
    cleaned = clean_json_response(response)
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start == -1 or end < start:
        raise ValueError('No JSON object found in response')

    data = json.loads(cleaned[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError(f'Expected JSON object, got {type(data).__name__}')
    return data
