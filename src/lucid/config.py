"""Configuration loading for lucid."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("lucid.config")


# Circadian slots: job type -> cron expression in the user's timezone
DEFAULT_SLOTS = {
    "morning_reflection": "0 7 * * *",     # fresh eyes
    "midday_curiosity": "0 12 * * *",      # active explorer
    "afternoon_synthesis": "0 15 * * *",   # deep work companion
    "evening_consolidation": "0 20 * * *", # winding down
    "night_dream": "0 2 * * *",            # dreaming mind
    "document_reflection": "0 21 * * *",
    "self_review": "0 22 * * 4",           # Thursdays only
}


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep


@dataclass
class SchedulerConfig:
    dispatch_interval: int = 60  # seconds between due-job polls
    generation_cron: str = "0 0 * * *"  # daily job generation
    generation_timezone: str = "UTC"
    active_user_days: int = 7  # only users active this recently get jobs
    max_concurrent_users: int = 10  # in-flight user sequences before deferring
    job_timeout_minutes: int = 0  # per-job deadline, 0 = none
    shutdown_grace_seconds: int = 30  # wait for in-flight jobs on stop


@dataclass
class AgentsConfig:
    """Autonomous agent configuration."""
    enabled: bool = False  # global feature flag
    model: str = "sonnet"
    llm_timeout: int = 300  # seconds per model call
    default_timezone: str = "America/Chicago"
    recent_thought_count: int = 10  # thoughts included as context
    slots: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SLOTS))


@dataclass
class ResearchConfig:
    enabled: bool = False  # web research feature flag
    interval: int = 300  # seconds between runner ticks
    batch_size: int = 3
    stuck_after_minutes: int = 10
    max_attempts: int = 3  # stuck tasks past this are failed, not reset


@dataclass
class SearchConfig:
    """Tavily web search configuration."""
    api_key: str = ""
    base_url: str = "https://api.tavily.com/search"
    max_results: int = 5
    max_retries: int = 3
    backoff_base: float = 2.0
    backoff_multiplier: float = 2.0
    basic_timeout: float = 45.0
    advanced_timeout: float = 60.0

    def timeout_for(self, depth: str) -> float:
        if depth == "advanced":
            return self.advanced_timeout
        return self.basic_timeout


@dataclass
class Config:
    agent_name: str = "Lucid"
    db_path: Path = field(default_factory=lambda: Path("data/lucid.db"))
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    research: ResearchConfig = field(default_factory=ResearchConfig)
    search: SearchConfig = field(default_factory=SearchConfig)


def _env_flag(name: str) -> bool | None:
    """Read a true/false environment flag. Returns None if unset."""
    val = os.environ.get(name)
    if val is None or val == "":
        return None
    return val.strip().lower() in ("1", "true", "yes", "on")


def _parse_slots(raw: dict) -> dict[str, str]:
    """Merge configured slot crons over the defaults. Empty string disables a slot."""
    slots = dict(DEFAULT_SLOTS)
    for job_type, cron in raw.items():
        if not cron:
            slots.pop(job_type, None)
        else:
            slots[job_type] = cron
    return slots


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        # Look for config in standard locations
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/lucid/config.toml",
            Path("/etc/lucid/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    config = Config()

    if config_path is not None and config_path.exists():
        with open(config_path, "rb") as f:
            data = tomli.load(f)
        logger.debug("Loaded config from %s", config_path)
        _apply_toml(config, data)

    # Environment overrides for secrets and feature flags
    api_key = os.environ.get("LUCID_TAVILY_API_KEY") or os.environ.get("TAVILY_API_KEY")
    if api_key:
        config.search.api_key = api_key

    agents_flag = _env_flag("ENABLE_AUTONOMOUS_AGENTS")
    if agents_flag is not None:
        config.agents.enabled = agents_flag

    research_flag = _env_flag("ENABLE_WEB_RESEARCH")
    if research_flag is not None:
        config.research.enabled = research_flag

    return config


def _apply_toml(config: Config, data: dict) -> None:
    if "agent_name" in data:
        config.agent_name = data["agent_name"]

    if "db_path" in data:
        config.db_path = Path(data["db_path"])

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
        )

    if "scheduler" in data:
        sched = data["scheduler"]
        config.scheduler = SchedulerConfig(
            dispatch_interval=sched.get("dispatch_interval", 60),
            generation_cron=sched.get("generation_cron", "0 0 * * *"),
            generation_timezone=sched.get("generation_timezone", "UTC"),
            active_user_days=sched.get("active_user_days", 7),
            max_concurrent_users=sched.get("max_concurrent_users", 10),
            job_timeout_minutes=sched.get("job_timeout_minutes", 0),
            shutdown_grace_seconds=sched.get("shutdown_grace_seconds", 30),
        )

    if "agents" in data:
        ag = data["agents"]
        config.agents = AgentsConfig(
            enabled=ag.get("enabled", False),
            model=ag.get("model", "sonnet"),
            llm_timeout=ag.get("llm_timeout", 300),
            default_timezone=ag.get("default_timezone", "America/Chicago"),
            recent_thought_count=ag.get("recent_thought_count", 10),
            slots=_parse_slots(ag.get("slots", {})),
        )

    if "research" in data:
        rs = data["research"]
        config.research = ResearchConfig(
            enabled=rs.get("enabled", False),
            interval=rs.get("interval", 300),
            batch_size=rs.get("batch_size", 3),
            stuck_after_minutes=rs.get("stuck_after_minutes", 10),
            max_attempts=rs.get("max_attempts", 3),
        )

    if "search" in data:
        s = data["search"]
        config.search = SearchConfig(
            api_key=s.get("api_key", ""),
            base_url=s.get("base_url", "https://api.tavily.com/search"),
            max_results=s.get("max_results", 5),
            max_retries=s.get("max_retries", 3),
            backoff_base=s.get("backoff_base", 2.0),
            backoff_multiplier=s.get("backoff_multiplier", 2.0),
            basic_timeout=s.get("basic_timeout", 45.0),
            advanced_timeout=s.get("advanced_timeout", 60.0),
        )
