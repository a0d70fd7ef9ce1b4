"""Agent job handlers.

Every job type maps to an async handler ``(user_id, job_id) -> AgentResult``.
Handlers read context, call the model, and store what it produced. They
never touch job status; that belongs to the executor.
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

from .config import Config
from .db import RESEARCH_APPROACHES, JobType, Thought
from .llm import run_claude
from .store import JobStore

logger = logging.getLogger("lucid.agents")

MAX_THOUGHTS_PER_JOB = 5
MAX_RESEARCH_PER_JOB = 3

_THOUGHT_RE = re.compile(r"^\s*THOUGHT:\s*(.+?)\s*$", re.MULTILINE)
_RESEARCH_RE = re.compile(r"^\s*RESEARCH:\s*(.+?)\s*$", re.MULTILINE)


@dataclass
class AgentResult:
    thoughts_generated: int = 0
    research_tasks_created: int = 0


Handler = Callable[[str, int], Awaitable[AgentResult]]

# One-line framing per job type; the full prompt is assembled in build_prompt
JOB_FOCUS = {
    JobType.MORNING_REFLECTION: "Morning reflection. Look back at recent thoughts with fresh eyes and set an intention for the day.",
    JobType.MIDDAY_CURIOSITY: "Midday curiosity. Follow a question that came up recently and decide what is worth looking into.",
    JobType.AFTERNOON_SYNTHESIS: "Afternoon synthesis. Connect recent threads into one or two clearer ideas.",
    JobType.EVENING_CONSOLIDATION: "Evening consolidation. Settle what mattered today and let the rest go.",
    JobType.NIGHT_DREAM: "Night dream. Let associations wander loosely between recent themes.",
    JobType.DOCUMENT_REFLECTION: "Document reflection. Reflect on the shape of the ongoing shared notes and what they leave out.",
    JobType.SELF_REVIEW: "Weekly self review. Notice patterns in how you have been thinking and what to adjust.",
    JobType.MORNING_CURIOSITY_SESSION: "Morning curiosity session. Pick the open questions most worth researching today.",
    JobType.DREAM_SESSION: "Dream session. Recombine recent material into unexpected images and ideas.",
    JobType.STATE_SESSION: "State session. Take stock of the user's current state and what might help.",
    JobType.ORBIT_SESSION: "Orbit session. Review the long-running topics the user keeps coming back to.",
}

# Job types that may queue web research
RESEARCHING_JOB_TYPES = frozenset({
    JobType.MIDDAY_CURIOSITY,
    JobType.AFTERNOON_SYNTHESIS,
    JobType.MORNING_CURIOSITY_SESSION,
    JobType.ORBIT_SESSION,
})


def build_prompt(
    agent_name: str,
    job_type: JobType,
    recent_thoughts: list[Thought],
    allow_research: bool,
) -> str:
    """Build the prompt for one job run."""
    lines = [
        f"You are {agent_name}, thinking on your own between conversations.",
        "",
        JOB_FOCUS[job_type],
        "",
    ]
    if recent_thoughts:
        lines.append("Recent thoughts (newest first):")
        for thought in recent_thoughts:
            lines.append(f"- {thought.content}")
    else:
        lines.append("There are no recent thoughts yet.")
    lines.extend([
        "",
        f"Write up to {MAX_THOUGHTS_PER_JOB} thoughts, one per line, each starting with 'THOUGHT: '.",
    ])
    if allow_research:
        approaches = ", ".join(RESEARCH_APPROACHES)
        lines.append(
            f"If something deserves a web search, add up to {MAX_RESEARCH_PER_JOB} lines of the form "
            f"'RESEARCH: <query> | <approach>' where approach is one of: {approaches}."
        )
    lines.append("Output nothing else.")
    return "\n".join(lines)


def parse_output(output: str) -> tuple[list[str], list[tuple[str, str]]]:
    """Extract thoughts and research requests from model output.

    Returns (thoughts, [(query, approach), ...]). Unknown approaches fall
    back to "exploratory".
    """
    thoughts = [m.group(1) for m in _THOUGHT_RE.finditer(output) if m.group(1)]

    research = []
    for match in _RESEARCH_RE.finditer(output):
        query, _, approach = match.group(1).partition("|")
        query = query.strip()
        approach = approach.strip().lower()
        if not query:
            continue
        if approach not in RESEARCH_APPROACHES:
            approach = "exploratory"
        research.append((query, approach))

    return thoughts[:MAX_THOUGHTS_PER_JOB], research[:MAX_RESEARCH_PER_JOB]


def _make_handler(
    job_type: JobType,
    config: Config,
    store: JobStore,
    llm: Callable[..., Awaitable[str]],
) -> Handler:
    allow_research = config.research.enabled and job_type in RESEARCHING_JOB_TYPES

    async def handler(user_id: str, job_id: int) -> AgentResult:
        recent = await store.get_recent_thoughts(user_id, config.agents.recent_thought_count)
        prompt = build_prompt(config.agent_name, job_type, recent, allow_research)
        output = await llm(prompt, model=config.agents.model, timeout=config.agents.llm_timeout)

        thoughts, research = parse_output(output)
        for content in thoughts:
            await store.add_thought(user_id, content, job_id=job_id, job_type=job_type.value)

        created = 0
        if allow_research:
            for query, approach in research:
                await store.create_research_task(
                    user_id, query, approach=approach, purpose=f"Raised during {job_type.value}",
                )
                created += 1

        logger.debug(
            "%s for %s produced %d thought(s), %d research task(s)",
            job_type.value, user_id, len(thoughts), created,
        )
        return AgentResult(thoughts_generated=len(thoughts), research_tasks_created=created)

    handler.__name__ = f"{job_type.value}_handler"
    return handler


def build_handlers(
    config: Config,
    store: JobStore,
    llm: Callable[..., Awaitable[str]] = run_claude,
) -> dict[JobType, Handler]:
    """Static dispatch table covering every JobType."""
    return {job_type: _make_handler(job_type, config, store, llm) for job_type in JobType}
