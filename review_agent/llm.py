"""Bedrock completion client for batch reviews and inline fixes."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig

from review_agent.config import (
    BEDROCK_MAX_TOKENS,
    BEDROCK_MODEL_ID,
    BEDROCK_PROFILE,
    BEDROCK_REGION,
    USAGE_LOG_PATH,
)
from review_agent.models import CompletionResult, Conversation, ToolCall

logger = logging.getLogger(__name__)

# Signature of the async completion capability the orchestrator depends on:
# (conversation, optional tool schema) -> CompletionResult
CompleteFn = Callable[[Conversation, Optional[dict]], Awaitable[CompletionResult]]

_STREAM_ERROR_KEYS = (
    "internalServerException",
    "modelStreamErrorException",
    "throttlingException",
    "validationException",
)

# Module-level client, created once and reused across calls
_client = None

# ── Usage log setup ──────────────────────────────────────────────────────────

_usage_logger = None


def _get_usage_logger() -> logging.Logger:
    """Lazy-init a dedicated TSV file logger for token usage."""
    global _usage_logger
    if _usage_logger is not None:
        return _usage_logger

    _usage_logger = logging.getLogger("review_agent.usage")
    _usage_logger.setLevel(logging.INFO)
    _usage_logger.propagate = False

    log_path = Path(USAGE_LOG_PATH)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Decide on the header before the handler creates the file
    needs_header = not log_path.exists() or log_path.stat().st_size == 0

    if not _usage_logger.handlers:
        handler = logging.FileHandler(str(log_path), mode="a")
        handler.setFormatter(logging.Formatter("%(message)s"))
        _usage_logger.addHandler(handler)

    if needs_header:
        _usage_logger.info(
            "timestamp\tmodel\ttool\tinput_tokens\toutput_tokens\ttotal_tokens\tlatency_ms"
        )

    return _usage_logger


def _log_usage(tool: str, input_tokens: int, output_tokens: int, latency_ms: int) -> None:
    total = input_tokens + output_tokens
    logger.info(
        "Bedrock usage [%s]: input=%d output=%d total=%d latency=%dms model=%s",
        tool,
        input_tokens,
        output_tokens,
        total,
        latency_ms,
        BEDROCK_MODEL_ID,
    )
    _get_usage_logger().info(
        "%s\t%s\t%s\t%d\t%d\t%d\t%d",
        datetime.now(timezone.utc).isoformat(),
        BEDROCK_MODEL_ID,
        tool,
        input_tokens,
        output_tokens,
        total,
        latency_ms,
    )


# ── Bedrock client ───────────────────────────────────────────────────────────


def _get_client():
    """Lazy-init the Bedrock Runtime client using the configured AWS profile."""
    global _client
    if _client is None:
        session = boto3.Session(
            profile_name=BEDROCK_PROFILE,
            region_name=BEDROCK_REGION,
        )
        _client = session.client(
            "bedrock-runtime",
            config=BotoConfig(
                retries={"max_attempts": 2, "mode": "adaptive"},
                read_timeout=120,
                connect_timeout=10,
                max_pool_connections=8,
                tcp_keepalive=True,
            ),
        )
        logger.info(
            "Bedrock client initialized: profile=%s region=%s model=%s",
            BEDROCK_PROFILE,
            BEDROCK_REGION,
            BEDROCK_MODEL_ID,
        )
    return _client


def _request_body(
    conversation: Conversation,
    max_tokens: int,
    temperature: float,
    tool_spec: Optional[dict],
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "anthropic_version": "bedrock-2023-05-31",
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": conversation.turns,
    }
    if conversation.system_prompt:
        body["system"] = conversation.system_prompt
    if tool_spec is not None:
        body["tools"] = [tool_spec]
        body["tool_choice"] = {"type": "tool", "name": tool_spec["name"]}
    return body


def invoke_tool(
    conversation: Conversation,
    tool_spec: dict,
    tool: str = "inline_fix",
    max_tokens: int = BEDROCK_MAX_TOKENS,
    temperature: float = 0.0,
) -> CompletionResult:
    """Send a non-streaming request that forces a single tool call.

    Raises:
        RuntimeError: If the Bedrock call fails
    """
    client = _get_client()
    body = _request_body(conversation, max_tokens, temperature, tool_spec)

    start = time.monotonic()
    try:
        response = client.invoke_model(
            modelId=BEDROCK_MODEL_ID,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(body),
        )
        payload = json.loads(response["body"].read())
    except Exception as e:
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.error("Bedrock tool call failed after %dms: %s", latency_ms, e)
        raise RuntimeError(f"Bedrock inference failed: {e}") from e

    latency_ms = int((time.monotonic() - start) * 1000)
    usage = payload.get("usage", {})
    _log_usage(
        tool=tool,
        input_tokens=usage.get("input_tokens", 0),
        output_tokens=usage.get("output_tokens", 0),
        latency_ms=latency_ms,
    )

    text_parts: list[str] = []
    tool_call: Optional[ToolCall] = None
    for block in payload.get("content", []):
        if block.get("type") == "text":
            text_parts.append(block.get("text", ""))
        elif block.get("type") == "tool_use" and tool_call is None:
            tool_call = ToolCall(
                name=block.get("name", ""),
                arguments=json.dumps(block.get("input", {})),
            )

    return CompletionResult(
        text="".join(text_parts),
        tool_call=tool_call,
        stop_reason=payload.get("stop_reason", "unknown"),
    )


def invoke(
    conversation: Conversation,
    tool: str = "unknown",
    max_tokens: int = BEDROCK_MAX_TOKENS,
    temperature: float = 0.3,
) -> CompletionResult:
    """
    Send a streaming inference request to Bedrock and return the text reply.

    Args:
        conversation: System prompt and user turns to send
        tool: Label of the caller (for usage logging)
        max_tokens: Maximum tokens in the response
        temperature: Sampling temperature (lower = more focused)

    Returns:
        CompletionResult with the accumulated text and the stop reason
        ('end_turn', 'max_tokens', 'stop_sequence', or 'stream_error' when
        the stream broke after some text arrived).

    Raises:
        RuntimeError: If the Bedrock call fails
    """
    client = _get_client()
    body = _request_body(conversation, max_tokens, temperature, None)

    start = time.monotonic()
    logger.info("Bedrock stream starting [%s] model=%s", tool, BEDROCK_MODEL_ID)

    # Declared outside try so partial results are reachable in except
    text_chunks: list[str] = []
    input_tokens = 0
    output_tokens = 0

    try:
        response = client.invoke_model_with_response_stream(
            modelId=BEDROCK_MODEL_ID,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(body),
        )

        stop_reason = "unknown"
        for event in response["body"]:
            if "chunk" not in event:
                for key in _STREAM_ERROR_KEYS:
                    if key in event:
                        err_msg = event[key].get("message", str(event[key]))
                        logger.error(
                            "Bedrock stream error [%s]: %s: %s", tool, key, err_msg
                        )
                        raise RuntimeError(f"Bedrock stream error ({key}): {err_msg}")
                logger.warning(
                    "Unknown non-chunk event in stream: %s", list(event.keys())
                )
                continue

            try:
                chunk = json.loads(event["chunk"]["bytes"])
            except (json.JSONDecodeError, KeyError) as parse_err:
                logger.warning("Malformed stream chunk, skipping: %s", parse_err)
                continue

            chunk_type = chunk.get("type", "")
            if chunk_type == "content_block_delta":
                delta = chunk.get("delta", {})
                if delta.get("type") == "text_delta":
                    text_chunks.append(delta.get("text", ""))
            elif chunk_type == "message_delta":
                stop_reason = chunk.get("delta", {}).get("stop_reason", "unknown")
                output_tokens = chunk.get("usage", {}).get("output_tokens", 0)
            elif chunk_type == "message_start":
                input_tokens = (
                    chunk.get("message", {}).get("usage", {}).get("input_tokens", 0)
                )

        full_text = "".join(text_chunks)
        latency_ms = int((time.monotonic() - start) * 1000)
        _log_usage(tool, input_tokens, output_tokens, latency_ms)

        if stop_reason == "max_tokens":
            logger.warning(
                "Response truncated (hit max_tokens=%d) for tool=%s. "
                "Output may be incomplete.",
                max_tokens,
                tool,
            )
        if not full_text:
            logger.warning("Empty response from Bedrock stream for tool=%s", tool)

        return CompletionResult(text=full_text, stop_reason=stop_reason)

    except RuntimeError:
        raise
    except Exception as e:
        latency_ms = int((time.monotonic() - start) * 1000)
        partial = "".join(text_chunks)
        if partial:
            logger.error(
                "Bedrock stream failed after %dms with %d chars received: %s",
                latency_ms,
                len(partial),
                e,
            )
            _log_usage(tool, input_tokens, output_tokens, latency_ms)
            return CompletionResult(text=partial, stop_reason="stream_error")
        logger.error("Bedrock inference failed after %dms: %s", latency_ms, e)
        raise RuntimeError(f"Bedrock inference failed: {e}") from e


async def complete(
    conversation: Conversation, tool_spec: Optional[dict] = None
) -> CompletionResult:
    """Async completion capability: free text, or a forced tool call when
    ``tool_spec`` is given. The blocking boto3 call runs in a worker thread."""
    if tool_spec is not None:
        return await asyncio.to_thread(
            invoke_tool, conversation, tool_spec, tool=tool_spec["name"]
        )
    return await asyncio.to_thread(invoke, conversation, tool="review")
