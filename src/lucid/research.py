"""Periodic consumer of the research task queue."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

from .config import AgentsConfig, ResearchConfig
from .db import ResearchTask
from .llm import run_claude
from .search import SearchClient, SearchResponse
from .store import JobStore

logger = logging.getLogger("lucid.research")

SNIPPET_LENGTH = 300

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class ResearchSummary:
    processed: int = 0
    successful: int = 0
    failed: int = 0


def search_depth_for(approach: str) -> str:
    return "advanced" if approach == "analytical" else "basic"


def build_analysis_prompt(task: ResearchTask, response: SearchResponse) -> str:
    results_text = "\n---\n".join(
        f"{i}. {r.title}\n{r.content}\nSource: {r.url}\n"
        for i, r in enumerate(response.results, 1)
    )
    answer_text = f"\nSEARCH ANSWER: {response.answer}\n" if response.answer else ""
    return f"""You are analyzing web search results for a research query.

QUERY: {task.query}
PURPOSE: {task.purpose or 'General research'}
APPROACH: {task.approach}

SEARCH RESULTS:
{results_text}
{answer_text}
Provide:
1. A concise summary (2-3 sentences) of what was learned
2. 3-5 key findings
3. 1-3 facts worth remembering about the user's interest in this topic

Respond with JSON only:
{{"summary": "...", "key_findings": ["..."], "suggested_facts": ["..."]}}"""


def parse_analysis(output: str, fallback_answer: str | None) -> dict:
    """Parse the analysis JSON, falling back to the search answer."""
    match = _JSON_OBJECT_RE.search(output or "")
    if match:
        try:
            data = json.loads(match.group(0))
            if isinstance(data, dict):
                return {
                    "summary": data.get("summary") or "",
                    "key_findings": list(data.get("key_findings") or []),
                    "suggested_facts": list(data.get("suggested_facts") or []),
                }
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse research analysis: %s", e)
    return {
        "summary": fallback_answer or "Research completed.",
        "key_findings": [],
        "suggested_facts": [],
    }


class ResearchAnalyzer:
    """Summarizes search results with the model."""

    def __init__(self, agents_config: AgentsConfig,
                 llm: Callable[..., Awaitable[str]] = run_claude):
        self.model = agents_config.model
        self.timeout = agents_config.llm_timeout
        self.llm = llm

    async def analyze(self, task: ResearchTask, response: SearchResponse) -> dict:
        output = await self.llm(
            build_analysis_prompt(task, response), model=self.model, timeout=self.timeout,
        )
        return parse_analysis(output, response.answer)


def build_results(task: ResearchTask, response: SearchResponse, analysis: dict) -> dict:
    return {
        "query": task.query,
        "approach": task.approach,
        "search_results": [
            {
                "title": r.title,
                "url": r.url,
                "snippet": r.content[:SNIPPET_LENGTH],
                "score": r.score,
            }
            for r in response.results
        ],
        "answer": response.answer,
        "analysis": analysis["summary"],
        "key_findings": analysis["key_findings"],
        "suggested_facts": analysis["suggested_facts"],
    }


class ResearchTaskRunner:
    """Drains bounded batches of pending research tasks, one tick at a time.

    Ticks never overlap: a tick that starts while another is running
    returns an empty summary. Stuck tasks are reclaimed before each batch
    claim, and each task is isolated so one failure does not stop the rest.
    """

    def __init__(
        self,
        store: JobStore,
        search: SearchClient,
        analyzer: ResearchAnalyzer,
        config: ResearchConfig,
    ):
        self.store = store
        self.search = search
        self.analyzer = analyzer
        self.config = config
        self._processing = False

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def run_once(self) -> ResearchSummary:
        summary = ResearchSummary()
        if self._processing:
            logger.info("Research tick still running, skipping this one")
            return summary
        if not self.search.available:
            logger.warning("Web search unavailable, leaving research tasks queued")
            return summary

        self._processing = True
        try:
            await self.store.reset_stuck_tasks(
                self.config.stuck_after_minutes, self.config.max_attempts,
            )
            tasks = await self.store.get_pending_tasks(self.config.batch_size)
            if not tasks:
                logger.debug("No pending research tasks")
                return summary

            logger.info("Processing %d research task(s)", len(tasks))
            for task in tasks:
                summary.processed += 1
                try:
                    await self.process_task(task)
                    summary.successful += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Research task %d failed: %s", task.id, e)
                    summary.failed += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Research tick error: %s", e)
        finally:
            self._processing = False

        logger.info(
            "Research tick done: %d processed, %d successful, %d failed",
            summary.processed, summary.successful, summary.failed,
        )
        return summary

    async def process_task(self, task: ResearchTask) -> None:
        """Search, analyze and store one task. Raises on failure after recording it."""
        if not await self.store.mark_task_started(task.id):
            raise RuntimeError(f"Research task {task.id} is no longer pending")

        logger.info("Researching task %d (%s): %s", task.id, task.approach, task.query)
        try:
            response = await self.search.search(
                task.query, depth=search_depth_for(task.approach),
            )
            analysis = await self.analyzer.analyze(task, response)
            await self.store.mark_task_completed(task.id, build_results(task, response, analysis))
        except asyncio.CancelledError:
            await self.store.mark_task_failed(task.id, "Cancelled during shutdown")
            raise
        except Exception as e:
            await self.store.mark_task_failed(task.id, str(e) or type(e).__name__)
            raise
