"""
gitback commit log core: data model, line grammar, decoder and aggregation.

The decoder consumes the output of

    git log --numstat --format=%H|%an|%at|%s

one line at a time and never buffers the whole stream. Each commit starts
with a pipe-delimited header line and is followed by zero or more
tab-separated numstat lines (``added<TAB>removed<TAB>path``).

The aggregation engine folds the decoded commits into totals, a contributor
set, per-file touch counts, a top-K file ranking and a commit-index
histogram in a single pass.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)

logger = logging.getLogger(__name__)

SHORT_HASH_LENGTH = 7
DEFAULT_MESSAGE_LIMIT = 100
DEFAULT_MAX_LINE_LENGTH = 10 * 1024 * 1024
DEFAULT_TOP_FILES_LIMIT = 100
DEFAULT_HISTOGRAM_BUCKETS = 10
ELLIPSIS = "..."

MAX_IDENTITY_PART_LENGTH = 255
UNSAFE_IDENTITY_CHARS = set(";|&$`(){}[]<>\"'")
_SAFE_IDENTITY_RE = re.compile(r"^[A-Za-z0-9._-]+$")


# ============================================================================
# ERRORS
# ============================================================================


class GitbackError(Exception):
    """Base error carrying a machine-readable kind and an HTTP status."""

    kind = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.message, "code": self.kind}


class ValidationError(GitbackError):
    """Malformed or unsafe input, rejected before any I/O."""

    kind = "VALIDATION_ERROR"
    status = 400


class NotFoundError(GitbackError):
    """Repository does not exist or is not accessible."""

    kind = "NOT_FOUND"
    status = 404


class InternalError(GitbackError):
    """I/O, decode or infrastructure failure."""


class DecodeError(InternalError):
    """The commit log stream could not be decoded."""


class AnalysisCancelledError(GitbackError):
    """Analysis stopped by a cancellation signal."""


class DecodeCancelledError(AnalysisCancelledError):
    """Decoding observed a cancellation signal between commits."""


class AnalysisTimeoutError(AnalysisCancelledError):
    """Analysis exceeded its overall time budget."""

    kind = "TIMEOUT"
    status = 408


class RateLimitExceededError(GitbackError):
    kind = "RATE_LIMIT_EXCEEDED"
    status = 429


# ============================================================================
# DATA MODEL
# ============================================================================


@dataclass(frozen=True)
class RepositoryIdentity:
    """Owner/name pair used as the lookup key for cache and database."""

    owner: str
    name: str

    def __post_init__(self):
        for label, value in (("owner", self.owner), ("repo", self.name)):
            if not isinstance(value, str) or not value:
                raise ValidationError(f"{label} is required")
            if len(value) > MAX_IDENTITY_PART_LENGTH:
                raise ValidationError(
                    f"{label} must be at most {MAX_IDENTITY_PART_LENGTH} characters"
                )
            if UNSAFE_IDENTITY_CHARS.intersection(value):
                raise ValidationError("invalid characters in repository name")
            if not _SAFE_IDENTITY_RE.match(value) or value in (".", ".."):
                raise ValidationError(f"invalid {label}: {value!r}")

    @classmethod
    def parse(cls, owner: Any, name: Any) -> "RepositoryIdentity":
        """Build an identity from untrusted input, trimming surrounding whitespace."""
        owner = owner.strip() if isinstance(owner, str) else owner
        name = name.strip() if isinstance(name, str) else name
        return cls(owner, name)

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def cache_key(self) -> Tuple[str, str]:
        """Path components for per-repository files; "/" never occurs in either part."""
        return (self.owner, self.name)

    def __str__(self) -> str:
        return self.slug


@dataclass
class FileChange:
    path: str
    added: int
    removed: int


@dataclass
class CommitRecord:
    """
    One decoded commit.

    ``changes`` holds the numstat records consumed by the aggregator; it is
    not part of the serialized form sent to clients.
    """

    hash: str
    author: str
    timestamp: int
    message: str
    added: int = 0
    removed: int = 0
    files_touched_count: int = 0
    changes: List[FileChange] = field(default_factory=list, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "author": self.author,
            "date": datetime.fromtimestamp(self.timestamp, timezone.utc).isoformat(),
            "added": self.added,
            "removed": self.removed,
            "message": self.message,
            "filesTouchedCount": self.files_touched_count,
        }


@dataclass
class DecodeStats:
    commits: int = 0
    lines_read: int = 0
    numstat_lines: int = 0
    unrecognized_lines: int = 0
    timestamp_fallbacks: int = 0
    numeric_fallbacks: int = 0
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commits": self.commits,
            "lines_read": self.lines_read,
            "numstat_lines": self.numstat_lines,
            "unrecognized_lines": self.unrecognized_lines,
            "timestamp_fallbacks": self.timestamp_fallbacks,
            "numeric_fallbacks": self.numeric_fallbacks,
            "truncated": self.truncated,
        }


@dataclass
class HistogramBucket:
    index: int
    first_commit: int
    last_commit: int
    added: int = 0
    removed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "bucket": self.index,
            "firstCommit": self.first_commit,
            "lastCommit": self.last_commit,
            "added": self.added,
            "removed": self.removed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, int]) -> "HistogramBucket":
        return cls(
            index=data["bucket"],
            first_commit=data["firstCommit"],
            last_commit=data["lastCommit"],
            added=data["added"],
            removed=data["removed"],
        )


@dataclass
class AggregateResult:
    total_added: int = 0
    total_removed: int = 0
    total_contributors: int = 0
    total_commits: int = 0
    file_touch_counts: Dict[str, int] = field(default_factory=dict)
    top_files: List[Tuple[str, int]] = field(default_factory=list)
    lines_histogram: List[HistogramBucket] = field(default_factory=list)
    truncated: bool = False

    @property
    def total_lines(self) -> int:
        return self.total_added - self.total_removed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalAdded": self.total_added,
            "totalRemoved": self.total_removed,
            "totalLines": self.total_lines,
            "totalContributors": self.total_contributors,
            "totalCommits": self.total_commits,
            "fileTouchCounts": dict(self.file_touch_counts),
            "mostTouchedFiles": [
                {"file": path, "count": count} for path, count in self.top_files
            ],
            "linesHistogram": [b.to_dict() for b in self.lines_histogram],
            "truncated": self.truncated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregateResult":
        return cls(
            total_added=data["totalAdded"],
            total_removed=data["totalRemoved"],
            total_contributors=data["totalContributors"],
            total_commits=data["totalCommits"],
            file_touch_counts=dict(data.get("fileTouchCounts") or {}),
            top_files=[
                (entry["file"], entry["count"])
                for entry in data.get("mostTouchedFiles") or []
            ],
            lines_histogram=[
                HistogramBucket.from_dict(b) for b in data.get("linesHistogram") or []
            ],
            truncated=data.get("truncated", False),
        )


# ============================================================================
# LINE GRAMMAR
# ============================================================================

# The first header field cannot contain a tab, so a numstat line whose path
# holds "|" never classifies as a header.
_HEADER_RE = re.compile(
    r"^(?P<hash>[^|\s]+)\|(?P<author>[^|]*)\|(?P<timestamp>[^|]*)\|(?P<message>.*)$"
)
_NUMSTAT_RE = re.compile(r"^(?P<added>[^\t]*)\t(?P<removed>[^\t]*)\t(?P<path>.+)$")


@dataclass(frozen=True)
class HeaderLine:
    hash: str
    author: str
    timestamp: str
    message: str


@dataclass(frozen=True)
class NumstatLine:
    added: str
    removed: str
    path: str


@dataclass(frozen=True)
class BlankLine:
    pass


@dataclass(frozen=True)
class UnrecognizedLine:
    text: str


LogLine = Union[HeaderLine, NumstatLine, BlankLine, UnrecognizedLine]

_BLANK = BlankLine()


def classify_line(line: str) -> LogLine:
    """Classify one raw log line (trailing newline allowed)."""
    line = line.rstrip("\r\n")
    if not line:
        return _BLANK

    match = _HEADER_RE.match(line)
    if match:
        return HeaderLine(**match.groupdict())

    match = _NUMSTAT_RE.match(line)
    if match:
        return NumstatLine(**match.groupdict())

    return UnrecognizedLine(line)


def truncate_message(message: str, limit: int = DEFAULT_MESSAGE_LIMIT) -> str:
    if len(message) <= limit:
        return message
    return message[:limit] + ELLIPSIS


def _parse_timestamp(value: str) -> Optional[int]:
    """Epoch seconds, or None when unparsable or outside datetime's range."""
    try:
        timestamp = int(value)
        datetime.fromtimestamp(timestamp, timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return timestamp


def _parse_count(value: str) -> Optional[int]:
    """Numstat count; ``-`` (binary file) is 0, garbage is None."""
    if value == "-":
        return 0
    try:
        count = int(value)
    except ValueError:
        return None
    return count if count >= 0 else None


# ============================================================================
# DECODER
# ============================================================================


class CommitLogDecoder:
    """
    Push-style decoder for a commit log stream.

    Exactly one commit is open at a time. Numstat lines are attributed to the
    open commit only; the commit is finalized when the next header arrives or
    when :meth:`close` is called at end-of-stream.

    Args:
        max_commits: stop after this many commits and flag the result as
            truncated (None for no cap)
        max_line_length: longest accepted line, in characters
        message_limit: commit subjects longer than this are cut and get "..."
        cancel_event: object with ``is_set()``, checked between commits
        clock: returns the fallback timestamp for unparsable dates
    """

    def __init__(
        self,
        max_commits: Optional[int] = None,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
        cancel_event: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        if max_commits is not None and max_commits < 0:
            raise ValueError("max_commits must be non-negative")
        self.max_commits = max_commits
        self.max_line_length = max_line_length
        self.message_limit = message_limit
        self.cancel_event = cancel_event
        self.clock = clock
        self.stats = DecodeStats()
        self._current: Optional[CommitRecord] = None
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    @property
    def truncated(self) -> bool:
        return self.stats.truncated

    def feed(self, line: str) -> Optional[CommitRecord]:
        """
        Consume one line.

        Returns:
            The commit finalized by this line, if any.

        Raises:
            DecodeError: line exceeds ``max_line_length`` or the decoder is closed
            DecodeCancelledError: the cancel event was set
        """
        if self._done:
            raise DecodeError("decoder already finished")

        if len(line) > self.max_line_length:
            raise DecodeError(
                f"log line {self.stats.lines_read + 1} exceeds "
                f"{self.max_line_length} characters"
            )
        self.stats.lines_read += 1

        parsed = classify_line(line)

        if isinstance(parsed, HeaderLine):
            return self._start_commit(parsed)

        if isinstance(parsed, NumstatLine):
            if self._current is None:
                self.stats.unrecognized_lines += 1
            else:
                self._add_change(parsed)
            return None

        if isinstance(parsed, UnrecognizedLine):
            self.stats.unrecognized_lines += 1
            logger.debug("Skipping unrecognized log line: %.80s", parsed.text)

        return None

    def close(self) -> Optional[CommitRecord]:
        """Finalize the open commit at end-of-stream."""
        if self._done:
            return None
        self._done = True
        return self._finalize()

    def iter_commits(self, lines: Iterable[str]) -> Iterator[CommitRecord]:
        for line in lines:
            commit = self.feed(line)
            if commit is not None:
                yield commit
            if self._done:
                return
        commit = self.close()
        if commit is not None:
            yield commit

    async def aiter_commits(self, lines: AsyncIterable[str]) -> AsyncIterator[CommitRecord]:
        async for line in lines:
            commit = self.feed(line)
            if commit is not None:
                yield commit
            if self._done:
                return
        commit = self.close()
        if commit is not None:
            yield commit

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            self._done = True
            self._current = None
            raise DecodeCancelledError(
                f"decoding cancelled after {self.stats.commits} commits"
            )

    def _start_commit(self, header: HeaderLine) -> Optional[CommitRecord]:
        finalized = self._finalize()
        self._check_cancelled()

        if self.max_commits is not None and self.stats.commits >= self.max_commits:
            # A further commit exists beyond the cap.
            self.stats.truncated = True
            self._done = True
            return finalized

        timestamp = _parse_timestamp(header.timestamp)
        if timestamp is None:
            timestamp = int(self.clock())
            self.stats.timestamp_fallbacks += 1

        self._current = CommitRecord(
            hash=header.hash[:SHORT_HASH_LENGTH],
            author=header.author,
            timestamp=timestamp,
            message=truncate_message(header.message, self.message_limit),
        )
        return finalized

    def _add_change(self, numstat: NumstatLine):
        added = _parse_count(numstat.added)
        removed = _parse_count(numstat.removed)
        if added is None:
            added = 0
            self.stats.numeric_fallbacks += 1
        if removed is None:
            removed = 0
            self.stats.numeric_fallbacks += 1

        commit = self._current
        commit.added += added
        commit.removed += removed
        commit.files_touched_count += 1
        commit.changes.append(FileChange(numstat.path, added, removed))
        self.stats.numstat_lines += 1

    def _finalize(self) -> Optional[CommitRecord]:
        commit, self._current = self._current, None
        if commit is not None:
            self.stats.commits += 1
        return commit


class CommitStream:
    """Lazy, finite, non-restartable sequence of decoded commits."""

    def __init__(self, lines: Iterable[str], decoder: CommitLogDecoder):
        self.decoder = decoder
        self._lines = lines
        self._started = False

    @property
    def stats(self) -> DecodeStats:
        return self.decoder.stats

    @property
    def truncated(self) -> bool:
        return self.decoder.truncated

    def __iter__(self) -> Iterator[CommitRecord]:
        if self._started:
            raise RuntimeError("commit stream can only be iterated once")
        self._started = True
        return self.decoder.iter_commits(self._lines)


class AsyncCommitStream:
    """Async counterpart of :class:`CommitStream`."""

    def __init__(self, lines: AsyncIterable[str], decoder: CommitLogDecoder):
        self.decoder = decoder
        self._lines = lines
        self._started = False

    @property
    def stats(self) -> DecodeStats:
        return self.decoder.stats

    @property
    def truncated(self) -> bool:
        return self.decoder.truncated

    def __aiter__(self) -> AsyncIterator[CommitRecord]:
        if self._started:
            raise RuntimeError("commit stream can only be iterated once")
        self._started = True
        return self.decoder.aiter_commits(self._lines)


def decode(lines: Iterable[str], **options) -> CommitStream:
    """Decode a line iterable; ``options`` are passed to CommitLogDecoder."""
    return CommitStream(lines, CommitLogDecoder(**options))


def decode_async(lines: AsyncIterable[str], **options) -> AsyncCommitStream:
    return AsyncCommitStream(lines, CommitLogDecoder(**options))


# ============================================================================
# AGGREGATION ENGINE
# ============================================================================


def build_histogram(
    per_commit: List[Tuple[int, int]], buckets: int = DEFAULT_HISTOGRAM_BUCKETS
) -> List[HistogramBucket]:
    """
    Split commits into contiguous index ranges and sum lines per range.

    Buckets follow commit order, not calendar time. With fewer commits than
    buckets every commit gets its own bucket; otherwise the last bucket
    absorbs the remainder.
    """
    if buckets < 1:
        raise ValueError("histogram needs at least one bucket")
    total = len(per_commit)
    if total == 0:
        return []

    count = min(buckets, total)
    size = total // count
    histogram = []
    for index in range(count):
        start = index * size
        end = total if index == count - 1 else start + size
        bucket = HistogramBucket(index=index, first_commit=start, last_commit=end - 1)
        for added, removed in per_commit[start:end]:
            bucket.added += added
            bucket.removed += removed
        histogram.append(bucket)
    return histogram


class StatsAggregator:
    """
    Single-pass fold of decoded commits into an AggregateResult.

    Contributors are keyed by the exact author string: no case folding and no
    merging of display-name variants. Touch counts grow by one per numstat
    line, so a path listed twice in one commit counts twice.
    """

    def __init__(
        self,
        top_files_limit: int = DEFAULT_TOP_FILES_LIMIT,
        histogram_buckets: int = DEFAULT_HISTOGRAM_BUCKETS,
    ):
        if top_files_limit < 0:
            raise ValueError("top_files_limit must be non-negative")
        if histogram_buckets < 1:
            raise ValueError("histogram_buckets must be at least 1")
        self.top_files_limit = top_files_limit
        self.histogram_buckets = histogram_buckets
        self.total_added = 0
        self.total_removed = 0
        self.contributors = set()
        self.file_touch_counts: Dict[str, int] = {}
        self._per_commit: List[Tuple[int, int]] = []

    @property
    def total_commits(self) -> int:
        return len(self._per_commit)

    def process_commit(self, commit: CommitRecord):
        self.total_added += commit.added
        self.total_removed += commit.removed
        self.contributors.add(commit.author)
        self._per_commit.append((commit.added, commit.removed))

        counts = self.file_touch_counts
        for change in commit.changes:
            counts[change.path] = counts.get(change.path, 0) + 1

    def top_files(self) -> List[Tuple[str, int]]:
        # sorted() is stable, so equal counts keep first-seen order.
        ranked = sorted(
            self.file_touch_counts.items(), key=lambda item: item[1], reverse=True
        )
        return ranked[: self.top_files_limit]

    def finalize(self, truncated: bool = False) -> AggregateResult:
        return AggregateResult(
            total_added=self.total_added,
            total_removed=self.total_removed,
            total_contributors=len(self.contributors),
            total_commits=self.total_commits,
            file_touch_counts=dict(self.file_touch_counts),
            top_files=self.top_files(),
            lines_histogram=build_histogram(self._per_commit, self.histogram_buckets),
            truncated=truncated,
        )


def aggregate(
    commits: Iterable[CommitRecord],
    top_files_limit: int = DEFAULT_TOP_FILES_LIMIT,
    histogram_buckets: int = DEFAULT_HISTOGRAM_BUCKETS,
) -> AggregateResult:
    """
    Aggregate a commit sequence in one pass.

    When ``commits`` is a CommitStream its truncation flag is carried into the
    result.
    """
    aggregator = StatsAggregator(top_files_limit, histogram_buckets)
    for commit in commits:
        aggregator.process_commit(commit)
    return aggregator.finalize(truncated=bool(getattr(commits, "truncated", False)))
