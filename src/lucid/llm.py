"""Claude CLI invocation for agent handlers and research analysis."""

import asyncio
import logging

logger = logging.getLogger("lucid.llm")


class LLMError(RuntimeError):
    """The model call failed, timed out, or the CLI is missing."""


async def run_claude(prompt: str, *, model: str = "sonnet", timeout: float = 300) -> str:
    """Run ``claude -p`` with the prompt on stdin and return stripped stdout."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "claude", "-p", "-", "--model", model,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise LLMError("Claude CLI not found") from e

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(prompt.encode("utf-8")), timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise LLMError(f"Claude CLI timed out after {timeout:g}s") from e
    except asyncio.CancelledError:
        proc.kill()
        raise

    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace")[:200] if stderr else ""
        logger.error("Claude CLI failed (rc=%d): %s", proc.returncode, detail)
        raise LLMError(f"Claude CLI exited with code {proc.returncode}: {detail}")

    return stdout.decode("utf-8", errors="replace").strip()
