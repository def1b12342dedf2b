"""
LLM call + parse with a single strict retry.

On a failed parse the full raw response is written to generation_log, the
call is repeated once with stricter formatting instructions and a lower
temperature, and only if that also fails does the stage abort with a
ParseError that carries both attempts.
"""

import logging

from .. import config
from . import audit
from .errors import ParseError
from .json_repair import DEFAULT_WRAPPER_KEYS, REPAIRED, parse_structured
from .ledger import track_cost

logger = logging.getLogger(__name__)

STRICT_SUFFIX = (
    "\n\nCRITICAL: Return ONLY valid JSON. No markdown, no comments, no trailing "
    "commas, no text before or after the JSON. Every string must be closed and "
    "every bracket balanced."
)
RETRY_TEMPERATURE = 0.3


async def generate_structured(
    llm,
    store,
    project_id: str,
    stage: str,
    system_prompt: str,
    user_prompt: str,
    expect: type = list,
    wrapper_keys=DEFAULT_WRAPPER_KEYS,
    temperature: float = 0.7,
    max_tokens: int = 8192,
    agent_name: str = "",
):
    """
    Call ``llm.chat_completion`` and return the parsed value.

    Raises ParseError when both the first response and the strict retry are
    unusable.
    """
    cost = config.API_COSTS["wavespeed_chat"]

    raw = await llm.chat_completion(
        system_prompt, user_prompt, temperature=temperature, max_tokens=max_tokens
    )
    track_cost(store, project_id, cost)
    first = parse_structured(raw, expect=expect, wrapper_keys=wrapper_keys)
    if first.ok:
        if first.kind == REPAIRED:
            logger.info(f"[{project_id}] {stage}: LLM output repaired before parsing")
        return first.value

    logger.warning(f"[{project_id}] {stage}: unparseable LLM output ({first.error}), retrying strict")
    audit.log_event(store, project_id, audit.JSON_PARSE_FAILURE, stage, {
        "error": first.error,
        "rawResponse": first.raw,
        "rawResponseLength": len(first.raw or ""),
        "attempt": "initial",
    }, agent_name=agent_name)

    retry_raw = await llm.chat_completion(
        system_prompt + STRICT_SUFFIX,
        user_prompt,
        temperature=RETRY_TEMPERATURE,
        max_tokens=max_tokens,
    )
    track_cost(store, project_id, cost)
    retry = parse_structured(retry_raw, expect=expect, wrapper_keys=wrapper_keys)
    if retry.ok:
        logger.info(f"[{project_id}] {stage}: strict retry parsed")
        return retry.value

    audit.log_event(store, project_id, audit.JSON_PARSE_FAILURE, stage, {
        "error": retry.error,
        "rawResponse": retry.raw,
        "rawResponseLength": len(retry.raw or ""),
        "attempt": "retry",
    }, agent_name=agent_name)
    raise ParseError(first.error, retry.error, first.raw, retry.raw)
