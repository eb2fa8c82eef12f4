#!/usr/bin/env python3
"""
gitback - commit history statistics for GitHub repositories

Pipeline per request:

    validate -> cache check -> clone + stream git log -> decode/aggregate
             -> enrich from GitHub (repo info, top pull requests, concurrently)
             -> respond -> persist in background (cache + database)

The decoder and aggregator live in gitback_log, the external collaborators
(git, GitHub API, cache, database) in gitback_sources. This module holds the
configuration, orchestration and the command line interface.
"""

import asyncio
import json
import logging
import os
import shutil
import subprocess
import sys
import time
from collections import deque
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from importlib import metadata as importlib_metadata
from typing import Any, Awaitable, Deque, Dict, List, Optional, Set, Tuple

import click
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from gitback_log import (
    DEFAULT_HISTOGRAM_BUCKETS,
    DEFAULT_MAX_LINE_LENGTH,
    DEFAULT_MESSAGE_LIMIT,
    DEFAULT_TOP_FILES_LIMIT,
    AggregateResult,
    AnalysisCancelledError,
    AnalysisTimeoutError,
    CommitLogDecoder,
    DecodeError,
    GitbackError,
    InternalError,
    NotFoundError,
    RateLimitExceededError,
    RepositoryIdentity,
    StatsAggregator,
    ValidationError,
    decode,
)
from gitback_sources import (
    DEFAULT_CLONE_URL,
    DEFAULT_GITHUB_API,
    AnalysisCache,
    Discussion,
    GitHubMetadataClient,
    GitLogSource,
    RepoDatabase,
    RepoInfo,
    SourceError,
    SourceNotFoundError,
)

VERSION = "1.0.0"

logger = logging.getLogger(__name__)

colorama_init(autoreset=True)


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG_FILE_NAMES = (".gitback.yaml", ".gitback.yml", ".gitback.json")


@dataclass
class GitbackConfig:
    """Process-wide settings, built once at startup and passed explicitly."""

    github_token: Optional[str] = None
    github_api_url: str = DEFAULT_GITHUB_API
    clone_url_template: str = DEFAULT_CLONE_URL
    work_dir: Optional[str] = None
    clone_depth: Optional[int] = None
    max_commits: Optional[int] = 50000
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH
    message_limit: int = DEFAULT_MESSAGE_LIMIT
    top_files_limit: int = DEFAULT_TOP_FILES_LIMIT
    histogram_buckets: int = DEFAULT_HISTOGRAM_BUCKETS
    analysis_timeout: float = 300.0
    metadata_timeout: float = 15.0
    discussions_limit: int = 5
    discussions_window_days: int = 365
    cache_dir: Optional[str] = None
    cache_ttl: Optional[float] = 86400.0
    database_path: Optional[str] = None
    max_memory_mb: Optional[float] = None
    oldest_first: bool = True
    include_commits: bool = True
    enrich: bool = True
    rate_limit_max: int = 10
    rate_limit_window: float = 60.0

    @classmethod
    def field_names(cls) -> Set[str]:
        return {f.name for f in fields(cls)}

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if redact and data.get("github_token"):
            data["github_token"] = "***"
        return data


PRESETS = {
    "standard": {},
    "quick": {
        "max_commits": 5000,
        "clone_depth": 1000,
        "enrich": False,
        "include_commits": False,
    },
    "full": {"max_commits": 200000, "analysis_timeout": 900.0},
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must hold a mapping: {config_path}")
    return data


def find_config_file(search_dir: Optional[str] = None) -> Optional[str]:
    search_dir = search_dir or os.getcwd()
    for config_name in CONFIG_FILE_NAMES:
        config_path = os.path.join(search_dir, config_name)
        if os.path.exists(config_path):
            return config_path
    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Preset > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str] = None,
        preset_name: Optional[str] = None,
        search_dir: Optional[str] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.config_path = config_path or find_config_file(search_dir)

        if self.config_path:
            self.config = load_config_file(self.config_path)
            logger.info("Loaded configuration from %s", self.config_path)

        # kebab-case keys are accepted in files
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

        final_preset_name = preset_name or self.config.get("preset")
        if final_preset_name and final_preset_name not in PRESETS:
            raise ValueError(f"Unknown preset: {final_preset_name}")
        self.preset_name = final_preset_name
        self.preset = PRESETS.get(final_preset_name, {}) if final_preset_name else {}

        unknown = set(self.config) - GitbackConfig.field_names() - {"preset"}
        if unknown:
            logger.warning("Ignoring unknown configuration keys: %s", sorted(unknown))

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        return default

    def build(self) -> GitbackConfig:
        defaults = GitbackConfig()
        values = {
            name: self.get(name, getattr(defaults, name))
            for name in GitbackConfig.field_names()
        }
        return GitbackConfig(**values)


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Terminal progress output for the CLI
    - Color-coded output (colorama)
    - Progress bars (tqdm)
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()
        stage_text = self._colorize(f"-> {stage_name}", Fore.BLUE + Style.BRIGHT)
        print(stage_text, file=sys.stderr)
        if message:
            print(f"   {message}", file=sys.stderr)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())
        complete_text = self._colorize(
            f"   {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN
        )
        print(complete_text, file=sys.stderr)

        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}", file=sys.stderr)

    def create_progress_bar(
        self, total: Optional[int] = None, desc: str = "Decoding"
    ) -> Optional[tqdm]:
        if self.quiet:
            return None
        return tqdm(total=total, desc=desc, unit=" commits", file=sys.stderr, ncols=100)

    def progress(self, message: str, count: Optional[int] = None):
        if self.quiet:
            return
        if count is not None:
            print(f"   {message} ({count:,})", end="\r", file=sys.stderr, flush=True)
        else:
            print(f"   {message}", file=sys.stderr)

    def info(self, message: str):
        if not self.quiet:
            print(self._colorize(message, Fore.CYAN), file=sys.stderr)

    def warning(self, message: str):
        if not self.quiet:
            text = self._colorize(f"WARNING: {message}", Fore.YELLOW + Style.BRIGHT)
            print(text, file=sys.stderr)

    def error(self, message: str):
        """Always shown"""
        text = self._colorize(f"ERROR: {message}", Fore.RED + Style.BRIGHT)
        print(text, file=sys.stderr)

    def success(self, message: str):
        if not self.quiet:
            print(self._colorize(message, Fore.GREEN + Style.BRIGHT), file=sys.stderr)

    def summary(self, stats: Dict[str, Any]):
        if self.quiet:
            return
        elapsed = time.time() - self.start_time
        separator = self._colorize("=" * 60, Fore.CYAN)
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")
        print(self._colorize(f"   Total time: {elapsed:.2f}s", Fore.YELLOW))
        print(separator)


class MemoryMonitor:
    """Monitor resident memory and enforce an optional limit"""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0
        self._process = psutil.Process(os.getpid())

    def check_memory(self) -> float:
        memory_mb = self._process.memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)
        if self.limit_mb and memory_mb > self.limit_mb:
            raise MemoryError(
                f"Memory limit exceeded: {memory_mb:.1f}MB > {self.limit_mb}MB"
            )
        return memory_mb


# ============================================================================
# FIRE-AND-FORGET TASKS
# ============================================================================


class BackgroundTasks:
    """
    Detached tasks that outlive the request that spawned them.

    Tasks are created on the running loop, not as children of the caller, so
    cancelling a request does not cancel its persistence writes. Failures go
    to ``log`` instead of propagating.
    """

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("gitback.background")
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._run(coro, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Awaitable, name: str):
        try:
            await coro
        except asyncio.CancelledError:
            self.log.warning("Background task %s cancelled", name)
            raise
        except Exception:
            self.failures += 1
            self.log.exception("Background task %s failed", name)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None):
        """Wait for outstanding tasks, e.g. before process exit."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            self.log.warning("%d background task(s) still running", len(pending))


# ============================================================================
# RESPONSE MODEL
# ============================================================================


@dataclass
class EnrichmentResult:
    repo_info: Optional[RepoInfo] = None
    top_discussions: Optional[List[Discussion]] = None


@dataclass
class AnalysisResponse:
    identity: RepositoryIdentity
    aggregate: AggregateResult
    enrichment: EnrichmentResult = field(default_factory=EnrichmentResult)
    commits: Optional[List[Dict[str, Any]]] = None
    cached: bool = False
    generated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def degraded(self) -> List[str]:
        reasons = []
        if self.aggregate.truncated:
            reasons.append("commits_truncated")
        if self.enrichment.repo_info is None:
            reasons.append("repo_info_unavailable")
        if self.enrichment.top_discussions is None:
            reasons.append("discussions_unavailable")
        return reasons

    def to_dict(self) -> Dict[str, Any]:
        data = {"owner": self.identity.owner, "repo": self.identity.name}
        data.update(self.aggregate.to_dict())
        info = self.enrichment.repo_info
        discussions = self.enrichment.top_discussions
        data["github"] = info.to_dict() if info else None
        data["pullRequests"] = (
            [d.to_dict() for d in discussions] if discussions is not None else None
        )
        if self.commits is not None:
            data["commits"] = self.commits
        data["degraded"] = self.degraded
        data["cached"] = self.cached
        data["generatedAt"] = self.generated_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResponse":
        github = data.get("github")
        pull_requests = data.get("pullRequests")
        return cls(
            identity=RepositoryIdentity(data["owner"], data["repo"]),
            aggregate=AggregateResult.from_dict(data),
            enrichment=EnrichmentResult(
                repo_info=RepoInfo.from_dict(github) if github else None,
                top_discussions=(
                    [Discussion.from_dict(d) for d in pull_requests]
                    if pull_requests is not None
                    else None
                ),
            ),
            commits=data.get("commits"),
            cached=data.get("cached", False),
            generated_at=data.get("generatedAt") or datetime.now(timezone.utc).isoformat(),
        )

    def summary_fields(self) -> Dict[str, Any]:
        """Columns persisted in the database."""
        info = self.enrichment.repo_info
        return {
            "total_additions": self.aggregate.total_added,
            "total_removals": self.aggregate.total_removed,
            "total_lines": self.aggregate.total_lines,
            "total_commits": self.aggregate.total_commits,
            "total_contributors": self.aggregate.total_contributors,
            "stars": info.stars if info else None,
            "language": info.language if info else None,
            "size_kb": info.size_kb if info else None,
            "lines_histogram": [b.to_dict() for b in self.aggregate.lines_histogram],
        }


# ============================================================================
# ORCHESTRATOR
# ============================================================================


class AnalysisOrchestrator:
    """
    Runs one analysis per call to :meth:`analyze`.

    Cache and database adapters are optional; without them the pipeline
    still answers, it just never hits and never persists. Adapter calls run
    in worker threads. Enrichment failures leave fields empty, cache and
    database failures are logged, and only validation, not-found, decode and
    timeout failures reach the caller.
    """

    MEMORY_CHECK_INTERVAL = 5000
    PROGRESS_INTERVAL = 1000

    def __init__(
        self,
        config: GitbackConfig,
        source: Optional[GitLogSource] = None,
        metadata: Optional[GitHubMetadataClient] = None,
        cache: Optional[AnalysisCache] = None,
        database: Optional[RepoDatabase] = None,
        tasks: Optional[BackgroundTasks] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.config = config
        self.source = source or GitLogSource(
            clone_url_template=config.clone_url_template,
            work_root=config.work_dir,
            clone_depth=config.clone_depth,
            max_commits=config.max_commits,
            oldest_first=config.oldest_first,
            max_line_length=config.max_line_length,
        )
        self.metadata = metadata
        self.cache = cache
        self.database = database
        self.tasks = tasks or BackgroundTasks()
        self.reporter = reporter or ProgressReporter(quiet=True)

    async def analyze(self, owner: Any, name: Any) -> AnalysisResponse:
        request_start = time.time()
        identity = RepositoryIdentity.parse(owner, name)
        logger.info("Starting analysis for %s", identity)

        cached = await self._cache_lookup(identity)
        if cached is not None:
            logger.info("Returning cached analysis for %s", identity)
            self._schedule(self._increment_views(identity), f"views:{identity}")
            return cached

        aggregate, commits = await self._collect(identity)

        enrichment = await self._enrich(identity)

        response = AnalysisResponse(
            identity=identity,
            aggregate=aggregate,
            enrichment=enrichment,
            commits=commits,
        )
        for reason in response.degraded:
            logger.warning("Degraded result for %s: %s", identity, reason)

        self._schedule(self._persist(response), f"persist:{identity}")
        logger.info(
            "Analysis of %s finished in %.2fs", identity, time.time() - request_start
        )
        return response

    async def _cache_lookup(self, identity: RepositoryIdentity) -> Optional[AnalysisResponse]:
        if self.cache is None:
            return None
        try:
            payload = await asyncio.to_thread(self.cache.get, identity)
            if payload is None:
                return None
            response = AnalysisResponse.from_dict(payload)
        except Exception as e:
            logger.warning("Cache check failed for %s: %s", identity, e)
            return None
        response.cached = True
        return response

    async def _collect(
        self, identity: RepositoryIdentity
    ) -> Tuple[AggregateResult, Optional[List[Dict[str, Any]]]]:
        """Acquire + decode + aggregate under the overall timeout."""
        try:
            return await asyncio.wait_for(
                self._acquire_and_decode(identity), timeout=self.config.analysis_timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(
                "Analysis of %s timed out after %ss", identity, self.config.analysis_timeout
            )
            raise AnalysisTimeoutError(
                f"analysis timed out after {self.config.analysis_timeout:g} seconds"
            ) from e

    async def _acquire_and_decode(
        self, identity: RepositoryIdentity
    ) -> Tuple[AggregateResult, Optional[List[Dict[str, Any]]]]:
        self.reporter.stage_start("Clone", identity.slug)
        try:
            handle = await self.source.acquire(identity)
        except SourceNotFoundError as e:
            logger.info("Repository not found: %s (%s)", identity, e)
            raise NotFoundError("Repository not found") from e
        except SourceError as e:
            logger.error("Failed to clone %s: %s", identity, e)
            raise InternalError("Failed to clone repository") from e
        self.reporter.stage_complete("Clone")

        try:
            return await self._decode(identity, handle)
        finally:
            await handle.release()

    async def _decode(
        self, identity: RepositoryIdentity, handle
    ) -> Tuple[AggregateResult, Optional[List[Dict[str, Any]]]]:
        config = self.config
        decoder = CommitLogDecoder(
            max_commits=config.max_commits,
            max_line_length=config.max_line_length,
            message_limit=config.message_limit,
        )
        aggregator = StatsAggregator(config.top_files_limit, config.histogram_buckets)
        monitor = MemoryMonitor(limit_mb=config.max_memory_mb)
        commits = [] if config.include_commits else None

        self.reporter.stage_start("Decode", "Streaming commit history...")
        lines = handle.lines()
        commit_iter = decoder.aiter_commits(lines)
        try:
            async for commit in commit_iter:
                aggregator.process_commit(commit)
                if commits is not None:
                    commits.append(commit.to_dict())

                processed = aggregator.total_commits
                if processed % self.PROGRESS_INTERVAL == 0:
                    self.reporter.progress("Decoding commits", processed)
                if processed % self.MEMORY_CHECK_INTERVAL == 0:
                    monitor.check_memory()
        except (DecodeError, AnalysisCancelledError):
            logger.error("Failed to decode commit log for %s", identity)
            raise
        except SourceError as e:
            logger.error("Failed to read commit log for %s: %s", identity, e)
            raise DecodeError("Failed to analyze repository") from e
        except MemoryError as e:
            logger.error("Memory limit hit while analyzing %s: %s", identity, e)
            raise InternalError("Repository too large to analyze") from e
        finally:
            await commit_iter.aclose()
            await lines.aclose()

        stats = decoder.stats
        if stats.timestamp_fallbacks:
            logger.warning(
                "%s: %d commit(s) had unparsable timestamps, using current time",
                identity,
                stats.timestamp_fallbacks,
            )
        if stats.numeric_fallbacks:
            logger.warning(
                "%s: %d numstat count(s) were not integers, counted as 0",
                identity,
                stats.numeric_fallbacks,
            )
        if stats.truncated:
            logger.warning(
                "%s: history truncated at %d commits", identity, config.max_commits
            )
        if handle.history_truncated:
            logger.warning(
                "%s: shallow clone, history older than depth %s left out",
                identity,
                config.clone_depth,
            )

        result = aggregator.finalize(
            truncated=stats.truncated or handle.history_truncated
        )
        self.reporter.stage_complete(
            "Decode",
            {
                "Commits": f"{result.total_commits:,}",
                "Contributors": f"{result.total_contributors:,}",
                "Files": f"{len(result.file_touch_counts):,}",
            },
        )
        logger.info(
            "Decoded %s: %d commits, %d contributors, +%d/-%d lines",
            identity,
            result.total_commits,
            result.total_contributors,
            result.total_added,
            result.total_removed,
        )
        return result, commits

    async def _enrich(self, identity: RepositoryIdentity) -> EnrichmentResult:
        if self.metadata is None or not self.config.enrich:
            return EnrichmentResult()

        self.reporter.stage_start("Enrich", "Fetching GitHub metadata...")
        info, discussions = await asyncio.gather(
            self.metadata.fetch_repo_info(identity),
            self.metadata.fetch_top_discussions(identity, self.config.discussions_limit),
            return_exceptions=True,
        )
        result = EnrichmentResult()
        if isinstance(info, BaseException):
            logger.warning("Failed to fetch GitHub repo info for %s: %s", identity, info)
        else:
            result.repo_info = info
        if isinstance(discussions, BaseException):
            logger.warning(
                "Failed to fetch top pull requests for %s: %s", identity, discussions
            )
        else:
            result.top_discussions = discussions
        self.reporter.stage_complete("Enrich")
        return result

    def _schedule(self, coro, name: str):
        if self.cache is None and self.database is None:
            coro.close()
            return
        self.tasks.spawn(coro, name)

    async def _persist(self, response: AnalysisResponse):
        identity = response.identity
        if self.cache is not None:
            try:
                await asyncio.to_thread(self.cache.put, identity, response.to_dict())
            except Exception as e:
                logger.warning("Failed to store analysis in cache for %s: %s", identity, e)

        if self.database is not None:
            try:
                await asyncio.to_thread(
                    self.database.upsert_summary, identity, response.summary_fields()
                )
            except Exception as e:
                logger.warning("[DB] Failed to save repo %s: %s", identity, e)
            await self._increment_views(identity)

    async def _increment_views(self, identity: RepositoryIdentity):
        if self.database is None:
            return
        try:
            await asyncio.to_thread(self.database.increment_views, identity)
        except Exception as e:
            logger.warning("[DB] Failed to increment views for %s: %s", identity, e)


# ============================================================================
# INBOUND HANDLER
# ============================================================================


class RequestRateLimiter:
    """Sliding-window request limit per client key."""

    def __init__(self, max_requests: int = 10, window_seconds: float = 60.0, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)

    def _prune(self, hits: Deque[float], now: float):
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()

    def _sweep(self, now: float):
        """Forget clients with no request inside the window."""
        for client_id in list(self._hits):
            hits = self._hits[client_id]
            self._prune(hits, now)
            if not hits:
                del self._hits[client_id]
        self._last_sweep = now

    def check(self, client_id: str):
        """Record a request; raise RateLimitExceededError when over the limit."""
        now = self.clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)
        hits = self._hits.setdefault(client_id, deque())
        self._prune(hits, now)
        if len(hits) >= self.max_requests:
            raise RateLimitExceededError("Too many requests. Please try again later.")
        hits.append(now)


class AnalyzeHandler:
    """Framework-neutral ``POST /api/analyze``: payload in, (status, body) out."""

    def __init__(
        self,
        orchestrator: AnalysisOrchestrator,
        rate_limiter: Optional[RequestRateLimiter] = None,
    ):
        self.orchestrator = orchestrator
        self.rate_limiter = rate_limiter

    async def handle(self, payload: Any, client_id: str = "anonymous") -> Tuple[int, Dict[str, Any]]:
        try:
            if self.rate_limiter is not None:
                self.rate_limiter.check(client_id)
            if not isinstance(payload, dict):
                raise ValidationError("Invalid request body")
            owner = payload.get("owner", payload.get("username"))
            repo = payload.get("repo")
            response = await self.orchestrator.analyze(owner, repo)
            return 200, response.to_dict()
        except GitbackError as e:
            return e.status, e.to_dict()
        except Exception:
            logger.exception("Unhandled error while analyzing %r", payload)
            return 500, InternalError("Internal server error").to_dict()


def create_handler(
    config: GitbackConfig, orchestrator: Optional[AnalysisOrchestrator] = None
) -> AnalyzeHandler:
    """Handler with the configured rate limit, for mounting in a web app."""
    if orchestrator is None:
        orchestrator, _ = build_orchestrator(config)
    limiter = RequestRateLimiter(config.rate_limit_max, config.rate_limit_window)
    return AnalyzeHandler(orchestrator, limiter)


# ============================================================================
# CLI
# ============================================================================


def configure_logging(verbosity: int):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_orchestrator(
    config: GitbackConfig, reporter: Optional[ProgressReporter] = None
) -> Tuple[AnalysisOrchestrator, GitHubMetadataClient]:
    metadata = GitHubMetadataClient(
        token=config.github_token,
        base_url=config.github_api_url,
        timeout=config.metadata_timeout,
        discussions_limit=config.discussions_limit,
        discussions_window_days=config.discussions_window_days,
    )
    cache = AnalysisCache(config.cache_dir, config.cache_ttl) if config.cache_dir else None
    database = RepoDatabase(config.database_path) if config.database_path else None
    orchestrator = AnalysisOrchestrator(
        config,
        metadata=metadata,
        cache=cache,
        database=database,
        reporter=reporter,
    )
    return orchestrator, metadata


async def run_analysis(
    config: GitbackConfig, owner: str, repo: str, reporter: Optional[ProgressReporter] = None
) -> AnalysisResponse:
    orchestrator, metadata = build_orchestrator(config, reporter)
    async with metadata:
        try:
            return await orchestrator.analyze(owner, repo)
        finally:
            await orchestrator.tasks.drain(timeout=30)


def _resolve_config(ctx: click.Context, **cli_args) -> GitbackConfig:
    obj = ctx.obj or {}
    resolver = ConfigResolver(cli_args, obj.get("config_path"), obj.get("preset"))
    return resolver.build()


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file (.yaml or .json)",
)
@click.option("--preset", type=click.Choice(sorted(PRESETS)), help="Predefined limits")
@click.option("-v", "--verbose", count=True, help="More log output (-vv for debug)")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress output")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.version_option(version=VERSION)
@click.pass_context
def main(ctx, config_path, preset, verbose, quiet, no_color):
    """gitback: commit history statistics for GitHub repositories."""
    configure_logging(verbose)
    ctx.obj = {
        "config_path": config_path,
        "preset": preset,
        "reporter": ProgressReporter(
            quiet=quiet, verbose=verbose > 0, use_colors=not no_color
        ),
    }


@main.command()
@click.argument("owner")
@click.argument("repo")
@click.option("--token", envvar="GITHUB_TOKEN", help="GitHub token (or GITHUB_TOKEN)")
@click.option("--max-commits", type=int, help="Commit cap")
@click.option("--timeout", "analysis_timeout", type=float, help="Overall timeout in seconds")
@click.option("--depth", "clone_depth", type=int, help="Shallow clone depth")
@click.option("--top-files", "top_files_limit", type=int, help="Top files to report")
@click.option("--buckets", "histogram_buckets", type=int, help="Histogram buckets")
@click.option("--cache-dir", type=click.Path(file_okay=False), help="Analysis cache directory")
@click.option("--database", "database_path", type=click.Path(dir_okay=False), help="sqlite database")
@click.option("--no-enrich", is_flag=True, help="Skip GitHub metadata")
@click.option("--no-commits", is_flag=True, help="Leave the commit list out of the output")
@click.option("--json", "as_json", is_flag=True, help="Print the full response as JSON")
@click.option("-o", "--output", type=click.Path(dir_okay=False), help="Write the response to a file")
@click.pass_context
def analyze(ctx, owner, repo, token, no_enrich, no_commits, as_json, output, **cli_args):
    """Analyze the commit history of OWNER/REPO."""
    reporter = ctx.obj["reporter"]
    cli_args["github_token"] = token
    cli_args["enrich"] = False if no_enrich else None
    cli_args["include_commits"] = False if no_commits else None
    try:
        config = _resolve_config(ctx, **cli_args)
    except (OSError, ValueError) as e:
        reporter.error(str(e))
        sys.exit(2)

    try:
        response = asyncio.run(run_analysis(config, owner, repo, reporter))
    except GitbackError as e:
        reporter.error(f"{e.kind}: {e.message}")
        sys.exit(1)

    data = response.to_dict()
    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        reporter.success(f"Saved to {output}")

    if as_json:
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))
        return

    agg = response.aggregate
    info = response.enrichment.repo_info
    stats = {
        "Repository": response.identity.slug,
        "Commits": f"{agg.total_commits:,}" + (" (truncated)" if agg.truncated else ""),
        "Contributors": f"{agg.total_contributors:,}",
        "Lines added": f"{agg.total_added:,}",
        "Lines removed": f"{agg.total_removed:,}",
        "Cached": "yes" if response.cached else "no",
    }
    if info:
        stats["Stars"] = f"{info.stars:,}"
        stats["Language"] = info.language or "-"
    reporter.summary(stats)
    for path, count in agg.top_files[:10]:
        click.echo(f"{count:>8,}  {path}")


@main.command("decode")
@click.argument("logfile", type=click.File("r", encoding="utf-8", errors="replace"), default="-")
@click.option("--max-commits", type=int, help="Commit cap")
@click.option("--top-files", "top_files_limit", type=int, help="Top files to report")
@click.option("--buckets", "histogram_buckets", type=int, help="Histogram buckets")
@click.pass_context
def decode_command(ctx, logfile, **cli_args):
    """
    Aggregate a saved log, produced with:

        git log --numstat --format='%H|%an|%at|%s'
    """
    reporter = ctx.obj["reporter"]
    try:
        config = _resolve_config(ctx, **cli_args)
    except (OSError, ValueError) as e:
        reporter.error(str(e))
        sys.exit(2)

    stream = decode(
        logfile,
        max_commits=config.max_commits,
        max_line_length=config.max_line_length,
        message_limit=config.message_limit,
    )
    aggregator = StatsAggregator(config.top_files_limit, config.histogram_buckets)
    progress_bar = reporter.create_progress_bar(desc="Decoding")
    try:
        for commit in stream:
            aggregator.process_commit(commit)
            if progress_bar:
                progress_bar.update(1)
    except GitbackError as e:
        reporter.error(f"{e.kind}: {e.message}")
        sys.exit(1)
    finally:
        if progress_bar:
            progress_bar.close()

    stats = stream.stats
    if stats.timestamp_fallbacks:
        reporter.warning(f"{stats.timestamp_fallbacks} unparsable timestamp(s) set to now")
    if stats.numeric_fallbacks:
        reporter.warning(f"{stats.numeric_fallbacks} non-integer count(s) treated as 0")
    if stats.truncated:
        reporter.warning(f"History truncated at {config.max_commits} commits")

    result = aggregator.finalize(truncated=stats.truncated)
    click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))


@main.command()
@click.option("--database", "database_path", type=click.Path(dir_okay=False), help="sqlite database")
@click.option("-n", "--limit", default=10, show_default=True, help="Rows to show")
@click.pass_context
def top(ctx, database_path, limit):
    """Most viewed repositories."""
    reporter = ctx.obj["reporter"]
    config = _resolve_config(ctx, database_path=database_path)
    if not config.database_path:
        reporter.error("No database configured (use --database or database_path)")
        sys.exit(2)

    frame = RepoDatabase(config.database_path).top_repos_frame(limit)
    if frame.empty:
        reporter.info("No repositories analyzed yet")
        return
    click.echo(frame.to_string(index=False))


@main.command("check-dependencies")
def check_dependencies():
    """Report git and library availability."""
    git_path = shutil.which("git")
    if git_path:
        version = subprocess.run(
            [git_path, "--version"], capture_output=True, text=True
        ).stdout.strip()
        click.echo(f"  git: {version}")
    else:
        click.echo("  git: not found on PATH")

    for dist in ("click", "httpx", "jsonschema", "pandas", "psutil", "PyYAML", "tqdm", "colorama"):
        try:
            click.echo(f"  {dist}: {importlib_metadata.version(dist)}")
        except importlib_metadata.PackageNotFoundError:
            click.echo(f"  {dist}: not installed")


if __name__ == "__main__":
    main()
