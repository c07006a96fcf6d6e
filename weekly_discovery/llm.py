##########################################################################################
#
# Script name: llm.py
#
# Description: Chat-completion client used for delta queries and ranking.
#
##########################################################################################

import json
import logging
from typing import Any

from openai import OpenAI

from .config import LLM_TIMEOUT, require_env


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)


# ****************************************************************************************
# Functions
# ****************************************************************************************


def build_openai_client(timeout: float = LLM_TIMEOUT) -> OpenAI:
    api_key = require_env('OPENAI_API_KEY')
    # Failures go straight to the caller's fallback path.
    return OpenAI(api_key=api_key, timeout=timeout, max_retries=0)


def complete_json(
    client: Any,
    model: str,
    system_prompt: str,
    user_prompt: str,
    temperature: float = 0.3,
) -> dict:
    '''
    Run one JSON-mode chat completion and return the parsed object.

    Raises ValueError when the model returns nothing or something that is not
    a JSON object; transport errors from the client propagate unchanged.
    '''
    response = client.chat.completions.create(
        model=model,
        temperature=temperature,
        response_format={'type': 'json_object'},
        messages=[
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': user_prompt},
        ],
    )
    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise ValueError('No response from LLM')
    parsed = json.loads(content)
    if not isinstance(parsed, dict):
        raise ValueError('LLM response is not a JSON object')
    log.debug('LLM %s returned %d characters.', model, len(content))
    return parsed
