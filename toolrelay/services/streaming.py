"""Helpers for consuming streamed model output.

A stream ends at the first chunk whose ``finish_reason`` is terminal. That
chunk is still yielded, since providers often attach the final usage to it.
"""

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator, Mapping
from datetime import UTC, datetime
from typing import Any

from toolrelay.utils.logging import get_logger

logger = get_logger(__name__)

TERMINAL_FINISH_REASONS = frozenset(
    {"stop", "length", "content_filter", "tool_calls", "end_turn", "tool_use", "max_tokens", "stop_sequence"}
)


def chunk_field(chunk: Any, name: str, default: Any = None) -> Any:
    """Read a field from a mapping chunk or an object chunk."""
    if isinstance(chunk, Mapping):
        return chunk.get(name, default)
    return getattr(chunk, name, default)


def finish_reason(chunk: Any) -> str | None:
    reason = chunk_field(chunk, "finish_reason")
    return reason if isinstance(reason, str) and reason else None


def continue_stream(chunk: Any) -> bool:
    """Return False if ``chunk`` ends the stream."""
    return finish_reason(chunk) not in TERMINAL_FINISH_REASONS


def chunk_text(chunk: Any) -> str:
    """Text carried by a chunk, from ``content``, ``text`` or ``delta.content``."""
    for name in ("content", "text"):
        value = chunk_field(chunk, name)
        if isinstance(value, str) and value:
            return value
    delta = chunk_field(chunk, "delta")
    value = chunk_field(delta, "content") if delta is not None else None
    return value if isinstance(value, str) else ""


def iter_until_finished(chunks: Iterable[Any]) -> Iterator[Any]:
    """Yield chunks lazily, stopping after the terminating one."""
    for chunk in chunks:
        yield chunk
        if not continue_stream(chunk):
            return


async def aiter_until_finished(chunks: AsyncIterable[Any]) -> AsyncIterator[Any]:
    """Async counterpart of :func:`iter_until_finished`."""
    async for chunk in chunks:
        yield chunk
        if not continue_stream(chunk):
            return


async def adapt_stream(
    chunks: AsyncIterable[Any], chunk_timeout_s: float | None = 30.0
) -> AsyncIterator[dict[str, Any]]:
    """Normalize a provider stream into dict chunks annotated with ``chunk_metadata``.

    Args:
        chunks: Provider chunks, as mappings or objects
        chunk_timeout_s: Maximum wait for each chunk; None waits forever

    Raises:
        TimeoutError: If a chunk does not arrive in time
    """
    iterator = aiter(chunks)
    index = 0
    try:
        while True:
            try:
                if chunk_timeout_s is None:
                    chunk = await anext(iterator)
                else:
                    chunk = await asyncio.wait_for(anext(iterator), timeout=chunk_timeout_s)
            except StopAsyncIteration:
                return
            except TimeoutError:
                logger.error(f"No stream chunk received within {chunk_timeout_s}s after chunk {index}")
                raise

            if chunk is None:
                continue

            normalized = dict(chunk) if isinstance(chunk, Mapping) else _object_chunk(chunk)
            normalized["chunk_metadata"] = {
                "index": index,
                "timestamp": datetime.now(UTC),
                "chunk_size": len(chunk_text(chunk).encode()),
                "provider": chunk_field(chunk, "provider") or chunk_field(chunk, "model") or "unknown",
            }
            index += 1
            yield normalized

            if not continue_stream(normalized):
                return
    finally:
        close = getattr(iterator, "aclose", None)
        if close is not None:
            await close()
        logger.debug(f"Stream closed after {index} chunks")


def _object_chunk(chunk: Any) -> dict[str, Any]:
    if hasattr(chunk, "model_dump"):
        return chunk.model_dump()
    return {
        name: getattr(chunk, name)
        for name in ("content", "tool_calls", "tool_results", "usage", "finish_reason", "model")
        if hasattr(chunk, name)
    }
