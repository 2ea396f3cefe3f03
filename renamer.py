#!/usr/bin/env python3
"""
Rename a tag value on every point of one measurement in an InfluxDB v2 bucket.

Each point carrying tag=old_value is rewritten with tag=new_value and written
back; the original is deleted only after the server has acknowledged the
rewritten copy. Timestamps, fields and all other tags are left untouched.

Connection settings come from flags, from a simple key-value .influx.toml
file or from the INFLUXDB_V2_URL / INFLUXDB_V2_TOKEN / INFLUXDB_V2_ORG
environment variables, in that order of precedence.

Expected .influx.toml format:
    url = "http://localhost:8086"
    token = "<auth token>"
    org = "my-org"
    timeout = 6000                # optional (ms)
    connection_pool_maxsize = 25  # optional
    max_retries = 3               # optional, backoff on 429/5xx

Other keys are ignored.

Tips:
- Use --verify to count matching points without writing.
- Use --dry-run to log every rewrite without touching the bucket.
- Use --batch-size 1 to write and delete point by point.
- A failed or interrupted run can simply be started again: originals that
  are still present are picked up and finished.
- Nothing else may write points with the old tag value while a rename runs.
"""
from __future__ import annotations

import argparse
import os
import re
import signal
import sys
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Iterator, List, Mapping, Tuple
import toml
import logging

from urllib3.exceptions import HTTPError
from urllib3.util.retry import Retry

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

from influxdb_client import InfluxDBClient, Point as LinePoint, WritePrecision
from influxdb_client.client.flux_csv_parser import FluxCsvParserException
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.rest import ApiException

__version__ = "0.1.0"

RFC3339_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z$")
DURATION_RE = re.compile(r"^-(\d+)([smhdw])$")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_START = "1970-01-01T00:00:00Z"
# Close to the largest timestamp the storage engine accepts.
DEFAULT_STOP = "2262-04-11T00:00:00Z"
DEFAULT_BATCH_SIZE = 1000
DEFAULT_TIMEOUT = 60000

TIME_NS_COLUMN = "_time_ns"
RECORD_META = {"result", "table"}
STORE_ERRORS = (ApiException, HTTPError)
QUERY_ERRORS = STORE_ERRORS + (FluxCsvParserException,)
RETRY_STATUSES = (429, 500, 502, 503, 504)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2
EXIT_QUERY = 3
EXIT_CANCELLED = 130


class RenameError(Exception):
    """Base class for everything the rename engine raises."""


class ConfigError(RenameError):
    """Invalid or incomplete job configuration; the store was not contacted."""


class QueryError(RenameError):
    """The matching points could not be read. Fatal to the run.

    When raised from a run that already changed points, ``result`` holds the
    tally up to the failure.
    """

    result = None


class WriteError(RenameError):
    """A rewritten point was not written. The original is untouched."""


class DeleteError(RenameError):
    """An original was not deleted after its rewrite was written."""


class Cancelled(RenameError):
    """The caller asked the run to stop."""


def parse_time(ts: str | None) -> str | None:
    if ts is None:
        return None
    ts = ts.strip()
    if ts == "now()":
        return ts
    if RFC3339_RE.match(ts):
        return ts
    if DURATION_RE.match(ts):
        return ts
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00")).astimezone(timezone.utc)
        return dt.isoformat().replace("+00:00", "Z")
    except Exception as e:
        raise ValueError(f"Unrecognized time format: {ts}") from e


def ns_to_rfc3339(ns: int) -> str:
    """Format nanoseconds since the epoch as RFC3339 with all nine digits."""
    secs, frac = divmod(ns, 1_000_000_000)
    base = (EPOCH + timedelta(seconds=secs)).strftime("%Y-%m-%dT%H:%M:%S")
    return f"{base}.{frac:09d}Z"


def flux_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("${", "\\${")
    return f'"{escaped}"'


def predicate_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class Point:
    """One stored point. ``timestamp`` is in nanoseconds since the epoch."""

    timestamp: int
    measurement: str
    tags: Mapping[str, str]
    fields: Mapping[str, object]

    @property
    def key(self) -> Tuple[int, Tuple[Tuple[str, str], ...]]:
        return self.timestamp, tuple(sorted(self.tags.items()))

    def to_line_point(self) -> LinePoint:
        p = LinePoint(self.measurement)
        for k, v in sorted(self.tags.items()):
            p.tag(k, v)
        for k, v in sorted(self.fields.items()):
            p.field(k, v)
        p.time(self.timestamp, WritePrecision.NS)
        return p

    def __str__(self) -> str:
        tags = ", ".join(f"{k}={v}" for k, v in sorted(self.tags.items()))
        return f"Point(measurement={self.measurement}, tags=[{tags}], fields={dict(self.fields)}, time={self.timestamp})"


@dataclass(frozen=True)
class RenameJob:
    """Everything one rename needs. Validated on construction, never mutated."""

    host: str
    token: str
    bucket: str
    measurement: str
    tag: str
    old_value: str
    new_value: str
    batch_size: int = DEFAULT_BATCH_SIZE
    org: str | None = None
    start: str = DEFAULT_START
    stop: str = DEFAULT_STOP
    timeout: int = DEFAULT_TIMEOUT
    max_retries: int = 0
    connection_pool_maxsize: int | None = None
    dry_run: bool = False

    def __post_init__(self):
        for name in ("host", "token", "bucket", "measurement", "tag", "old_value", "new_value"):
            if not getattr(self, name):
                raise ConfigError(f"Missing required setting: {name}")
        if self.tag.startswith("_"):
            raise ConfigError(f"'{self.tag}' is a reserved column, not a tag key")
        if self.old_value == self.new_value:
            raise ConfigError("Old and new tag values are identical")
        if not _is_int(self.batch_size) or self.batch_size < 1:
            raise ConfigError(f"Batch size must be a positive integer, got {self.batch_size!r}")
        if not _is_int(self.timeout) or self.timeout <= 0:
            raise ConfigError(f"Timeout must be a positive integer (ms), got {self.timeout!r}")
        if not _is_int(self.max_retries) or self.max_retries < 0:
            raise ConfigError(f"Max retries must be a non-negative integer, got {self.max_retries!r}")
        if self.connection_pool_maxsize is not None and (not _is_int(self.connection_pool_maxsize) or self.connection_pool_maxsize < 1):
            raise ConfigError(f"Connection pool size must be a positive integer, got {self.connection_pool_maxsize!r}")
        for name in ("start", "stop"):
            try:
                parse_time(getattr(self, name))
            except ValueError as e:
                raise ConfigError(f"Invalid --{name}: {e}") from e

    def describe(self) -> str:
        return f"{self.bucket}/{self.measurement}: {self.tag}={self.old_value} -> {self.tag}={self.new_value}"


@dataclass
class RenameResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    partial: int = 0
    cancelled: bool = False
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not (self.failed or self.partial or self.cancelled)

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        return EXIT_OK if self.ok else EXIT_FAILURES

    def summary(self) -> str:
        if self.dry_run:
            return f"Dry run complete. Would rename {self.succeeded} of {self.attempted} points."
        text = (
            f"{self.attempted} points attempted, {self.succeeded} renamed, "
            f"{self.failed} failed, {self.partial} written but not deleted"
        )
        if self.cancelled:
            text += " (cancelled)"
        return text


def build_flux(bucket: str, measurement: str, tag: str, old_value: str, start: str = DEFAULT_START, stop: str = DEFAULT_STOP) -> str:
    tag_col = f"r[{flux_string(tag)}]"
    lines = [
        f"from(bucket: {flux_string(bucket)})",
        f"  |> range(start: {start}, stop: {stop})",
        f"  |> filter(fn: (r) => r._measurement == {flux_string(measurement)})",
        f"  |> filter(fn: (r) => exists {tag_col} and {tag_col} == {flux_string(old_value)})",
        '  |> pivot(rowKey: ["_time"], columnKey: ["_field"], valueColumn: "_value")',
        '  |> sort(columns: ["_time"])',
        f"  |> map(fn: (r) => ({{r with {TIME_NS_COLUMN}: int(v: r._time)}}))",
    ]
    return "\n".join(lines)


def build_tag_keys_flux(bucket: str, measurement: str, tag: str, old_value: str, start: str = DEFAULT_START, stop: str = DEFAULT_STOP) -> str:
    """Tag keys of the series that carry tag=old_value, not of the whole measurement."""
    tag_col = f"r[{flux_string(tag)}]"
    return "\n".join([
        'import "influxdata/influxdb/schema"',
        "",
        "schema.tagKeys(",
        f"  bucket: {flux_string(bucket)},",
        f"  predicate: (r) => r._measurement == {flux_string(measurement)} and {tag_col} == {flux_string(old_value)},",
        f"  start: {start},",
        f"  stop: {stop},",
        ")",
    ])


def record_to_point(rec, tag_keys: Iterable[str]) -> Point:
    """Turn one pivoted row into a Point.

    Columns named after a tag key become tags; every other non-reserved,
    non-null column is a field.
    """
    values = rec.values
    try:
        timestamp = int(values[TIME_NS_COLUMN])
        measurement = values["_measurement"]
    except (KeyError, TypeError, ValueError) as e:
        raise QueryError(f"Cannot parse record {values!r}") from e
    tags: Dict[str, str] = {}
    fields: Dict[str, object] = {}
    for k, v in values.items():
        if k in RECORD_META or k.startswith("_") or v is None:
            continue
        if k in tag_keys:
            tags[k] = str(v)
        else:
            fields[k] = v
    if not measurement or not fields:
        raise QueryError(f"Record has no measurement or no fields: {values!r}")
    return Point(timestamp, measurement, tags, fields)


class PointQuery:
    """Lazy, restartable selection of the points carrying tag=old_value.

    Nothing is sent until the query is iterated, and every iteration issues
    the query again. As long as nobody else changes the bucket in between, a
    second iteration yields the same points as the first.
    """

    def __init__(self, client: InfluxDBClient, bucket: str, measurement: str, tag: str, old_value: str,
                 org: str | None = None, start: str = DEFAULT_START, stop: str = DEFAULT_STOP):
        self._client = client
        self.bucket = bucket
        self.measurement = measurement
        self.tag = tag
        self.old_value = old_value
        self.org = org
        self.start = start
        self.stop = stop
        self._tag_keys: frozenset | None = None

    @property
    def flux(self) -> str:
        return build_flux(self.bucket, self.measurement, self.tag, self.old_value, self.start, self.stop)

    def tag_keys(self) -> frozenset:
        """Tag keys of the matching series; read once and cached.

        Only series carrying tag=old_value can be reached by a delete, so
        unrelated series with extra keys do not widen this set.
        """
        if self._tag_keys is None:
            flux = build_tag_keys_flux(self.bucket, self.measurement, self.tag, self.old_value, self.start, self.stop)
            logger.debug("Built flux query:\n%s", flux)
            try:
                tables = self._client.query_api().query(query=flux, org=self.org)
                keys = {str(rec.get_value()) for table in tables for rec in table.records}
            except QUERY_ERRORS as e:
                raise QueryError(f"Could not read tag keys of {self.measurement}: {e}") from e
            keys = {k for k in keys if k and not k.startswith("_")}
            keys.add(self.tag)
            self._tag_keys = frozenset(keys)
            logger.debug("Tag keys of %s: %s", self.measurement, sorted(self._tag_keys))
        return self._tag_keys

    def __iter__(self) -> Iterator[Point]:
        tag_keys = self.tag_keys()
        flux = self.flux
        logger.debug("Built flux query:\n%s", flux)
        try:
            for rec in self._client.query_api().query_stream(query=flux, org=self.org):
                yield record_to_point(rec, tag_keys)
        except QUERY_ERRORS as e:
            raise QueryError(f"Query on bucket {self.bucket} failed: {e}") from e


def fetch(client: InfluxDBClient, bucket: str, measurement: str, tag: str, old_value: str, **kwargs) -> PointQuery:
    return PointQuery(client, bucket, measurement, tag, old_value, **kwargs)


def rewrite(point: Point, tag: str, new_value: str) -> Point:
    return replace(point, tags={**point.tags, tag: new_value})


def chunked(points: Iterable[Point], size: int) -> Iterator[List[Point]]:
    batch: List[Point] = []
    for p in points:
        batch.append(p)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


@dataclass(frozen=True)
class DeleteRange:
    """One delete request: a series of original points between two instants."""

    measurement: str
    tags: Mapping[str, str]
    start: int
    stop: int
    count: int = 1

    @property
    def predicate(self) -> str:
        parts = [f"_measurement={predicate_string(self.measurement)}"]
        parts += [f"{k}={predicate_string(v)}" for k, v in sorted(self.tags.items())]
        return " AND ".join(parts)

    def covers(self, point: Point) -> bool:
        """True if deleting this range would also remove ``point``."""
        return (
            point.measurement == self.measurement
            and self.start <= point.timestamp <= self.stop
            and all(point.tags.get(k) == v for k, v in self.tags.items())
        )

    def contains(self, other: DeleteRange) -> bool:
        """True if deleting this range removes every point of ``other``."""
        return (
            other.measurement == self.measurement
            and self.start <= other.start and other.stop <= self.stop
            and all(other.tags.get(k) == v for k, v in self.tags.items())
        )

    def gap_to(self, later: DeleteRange) -> DeleteRange | None:
        """The stretch between this range and ``later`` of the same series, if any."""
        if later.measurement != self.measurement or dict(later.tags) != dict(self.tags) or later.start <= self.stop:
            return None
        return DeleteRange(self.measurement, dict(self.tags), self.stop, later.start, 0)

    def extend(self, later: DeleteRange) -> DeleteRange:
        return replace(self, stop=later.stop, count=self.count + later.count)

    def __str__(self) -> str:
        return f"{self.predicate} [{ns_to_rfc3339(self.start)} .. {ns_to_rfc3339(self.stop)}] ({self.count} points)"


@dataclass
class Written:
    """Outcome of a finished write phase, the only input a delete phase accepts.

    ``points`` keeps the batch order; ``ok[i]`` tells whether the rewrite of
    ``points[i]`` was acknowledged by the server.
    """

    points: List[Point]
    ok: List[bool]

    @property
    def failed(self) -> List[Point]:
        return [p for p, ok in zip(self.points, self.ok) if not ok]

    def delete_ranges(self) -> Iterator[DeleteRange]:
        """Group written originals into runs of one series.

        A run never spans a failed point, so no delete can reach an original
        whose rewrite is missing.
        """
        run: List[Point] = []
        for point, ok in zip(self.points, self.ok):
            if run and (not ok or point.measurement != run[-1].measurement
                        or point.tags != run[-1].tags or point.timestamp <= run[-1].timestamp):
                yield DeleteRange(run[0].measurement, dict(run[0].tags), run[0].timestamp, run[-1].timestamp, len(run))
                run = []
            if ok:
                run.append(point)
        if run:
            yield DeleteRange(run[0].measurement, dict(run[0].tags), run[0].timestamp, run[-1].timestamp, len(run))


class TagRenamer:
    """Drives query, rewrite, write and delete for one RenameJob.

    Each batch goes through two phases. ``write_phase`` writes every rewritten
    point and reports which ones the server acknowledged; ``delete_phase``
    only takes that report, so an original can never be removed before its
    replacement exists.

    A delete predicate matches every series whose tags include the given
    ones. When a point carries every tag key found on the matching series
    the predicate is exact and its range is deleted right away. Otherwise it
    could also reach points of wider series that are still unwritten, so the
    range is held back until the whole query has been processed and dropped
    if it covers a point whose write failed. Held-back ranges of one series
    are merged as they arrive, so the end of the run sends about one delete
    per series.
    """

    def __init__(self, job: RenameJob, client: InfluxDBClient, cancel: threading.Event | None = None):
        self.job = job
        self.client = client
        self.cancel = cancel or threading.Event()
        self._query: PointQuery | None = None
        self._write_api = None
        self._delete_api = None
        self._deferred: List[DeleteRange] = []
        self._failed: List[Point] = []
        self._undeleted: List[DeleteRange] = []

    @property
    def query(self) -> PointQuery:
        if self._query is None:
            job = self.job
            self._query = fetch(self.client, job.bucket, job.measurement, job.tag, job.old_value,
                                org=job.org, start=job.start, stop=job.stop)
        return self._query

    @property
    def write_api(self):
        if self._write_api is None:
            self._write_api = self.client.write_api(write_options=SYNCHRONOUS)
        return self._write_api

    @property
    def delete_api(self):
        if self._delete_api is None:
            self._delete_api = self.client.delete_api()
        return self._delete_api

    def check_cancelled(self):
        if self.cancel.is_set():
            raise Cancelled("Rename cancelled")

    def run(self) -> RenameResult:
        job = self.job
        result = RenameResult(dry_run=job.dry_run)
        self._deferred = []
        self._failed = []
        self._undeleted = []
        logger.info("Renaming %s (batch size %d)", job.describe(), job.batch_size)
        try:
            for i, batch in enumerate(chunked(self.query, job.batch_size), start=1):
                self.check_cancelled()
                result.attempted += len(batch)
                if job.dry_run:
                    for p in batch:
                        logger.info("Dry run: would rewrite %s", rewrite(p, job.tag, job.new_value))
                    result.succeeded += len(batch)
                    continue
                written = self.write_phase(batch)
                deleted, kept = self.delete_phase(written)
                result.failed += len(written.failed)
                result.succeeded += deleted
                result.partial += kept
                logger.info("[batch %d] %d written, %d deleted, %d failed (total %d)",
                            i, written.ok.count(True), deleted, len(written.failed), result.attempted)
        except Cancelled:
            result.cancelled = True
            logger.warning("Cancelled after %d points; the rest is left as it was", result.attempted)
        except QueryError as e:
            # the unread rest may sit under a held-back range
            result.partial += sum(rng.count for rng in self._deferred)
            self._deferred = []
            logger.error("Query failed after %d points. So far: %s", result.attempted, result.summary())
            e.result = result
            raise
        deleted, kept, recovered = self.flush_deferred(skip=result.cancelled)
        result.succeeded += deleted + recovered
        result.partial += kept - recovered
        return result

    def write_phase(self, batch: List[Point]) -> Written:
        """Write rewritten copies of ``batch``. Nothing is deleted here."""
        job = self.job
        rewritten = [rewrite(p, job.tag, job.new_value) for p in batch]
        for p in rewritten:
            logger.debug("Rewrite: %s", p)
        try:
            self._write(rewritten)
            return Written(list(batch), [True] * len(batch))
        except WriteError as e:
            if len(batch) == 1:
                logger.error("Write failed for %s: %s", batch[0], e)
                self._failed.append(batch[0])
                return Written(list(batch), [False])
            logger.warning("Batch write of %d points failed (%s); writing them one by one", len(batch), e)
        ok: List[bool] = []
        for original, new in zip(batch, rewritten):
            try:
                self._write([new])
                ok.append(True)
            except WriteError as e:
                logger.error("Write failed for %s: %s", original, e)
                self._failed.append(original)
                ok.append(False)
        return Written(list(batch), ok)

    def delete_phase(self, written: Written) -> Tuple[int, int]:
        """Delete originals whose rewrites are in ``written``.

        Returns (deleted, kept) point counts. Held-back ranges count in
        neither until ``flush_deferred`` runs.
        """
        tag_keys = self.query.tag_keys()
        deleted = kept = 0
        for rng in written.delete_ranges():
            if set(rng.tags) != tag_keys:
                self._hold_back(rng)
                continue
            try:
                self._delete(rng)
                deleted += rng.count
            except DeleteError as e:
                logger.error("Delete failed for %s: %s. Originals left in place; re-run to clean up", rng, e)
                self._undeleted.append(rng)
                kept += rng.count
        return deleted, kept

    def _hold_back(self, rng: DeleteRange):
        if self._deferred:
            last = self._deferred[-1]
            gap = last.gap_to(rng)
            if gap is not None and not any(gap.covers(p) for p in self._failed):
                self._deferred[-1] = last.extend(rng)
                return
        logger.debug("Holding back delete %s", rng)
        self._deferred.append(rng)

    def flush_deferred(self, skip: bool = False) -> Tuple[int, int, int]:
        """Send held-back deletes.

        Returns (deleted, kept, recovered). ``recovered`` counts points whose
        own delete failed earlier but which a wider delete removed anyway;
        the caller moves them from partial to renamed.
        """
        deferred, self._deferred = self._deferred, []
        if not deferred:
            return 0, 0, 0
        if skip:
            kept = sum(rng.count for rng in deferred)
            logger.warning("Skipping %d held-back delete(s) covering %d points; re-run to clean up", len(deferred), kept)
            return 0, kept, 0
        logger.info("Applying %d held-back delete(s)", len(deferred))
        deleted = kept = 0
        done: List[DeleteRange] = []
        for rng in deferred:
            blocker = next((p for p in self._failed if rng.covers(p)), None)
            if blocker is not None:
                logger.warning("Not deleting %s: it would also remove %s whose rewrite failed", rng, blocker)
                kept += rng.count
                continue
            try:
                self._delete(rng)
                deleted += rng.count
                done.append(rng)
            except DeleteError as e:
                logger.error("Delete failed for %s: %s. Originals left in place; re-run to clean up", rng, e)
                self._undeleted.append(rng)
                kept += rng.count
        recovered = sum(u.count for u in self._undeleted if any(d.contains(u) for d in done))
        if recovered:
            logger.info("%d point(s) whose own delete failed were removed by a wider delete", recovered)
        return deleted, kept, recovered

    def _write(self, points: List[Point]):
        try:
            self.write_api.write(bucket=self.job.bucket, org=self.job.org,
                                 record=[p.to_line_point() for p in points],
                                 write_precision=WritePrecision.NS)
        except STORE_ERRORS as e:
            raise WriteError(str(e)) from e

    def _delete(self, rng: DeleteRange):
        logger.debug("Delete: %s", rng)
        try:
            self.delete_api.delete(start=ns_to_rfc3339(rng.start), stop=ns_to_rfc3339(rng.stop),
                                   predicate=rng.predicate, bucket=self.job.bucket, org=self.job.org)
        except STORE_ERRORS as e:
            raise DeleteError(str(e)) from e


def build_client(job: RenameJob) -> InfluxDBClient:
    kwargs = {
        "url": job.host,
        "token": job.token,
        "timeout": job.timeout,
    }
    if job.org:
        kwargs["org"] = job.org
    if job.connection_pool_maxsize:
        kwargs["connection_pool_maxsize"] = job.connection_pool_maxsize
    if job.max_retries:
        kwargs["retries"] = Retry(
            total=job.max_retries,
            backoff_factor=0.5,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=None,
            raise_on_status=False,
        )
    return InfluxDBClient(**kwargs)


def rename_tag(job: RenameJob, client: InfluxDBClient | None = None, cancel: threading.Event | None = None) -> RenameResult:
    """Run ``job``. A client is built and closed here when none is given."""
    if client is not None:
        return TagRenamer(job, client, cancel).run()
    client = build_client(job)
    try:
        return TagRenamer(job, client, cancel).run()
    finally:
        client.close()


def load_influx_config(path: str) -> dict:
    try:
        cfg = toml.load(path)
    except (OSError, toml.TomlDecodeError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    parsed = {
        "url": cfg.get("url"),
        "org": cfg.get("org"),
        "token": cfg.get("token"),
        "timeout": cfg.get("timeout"),
        "connection_pool_maxsize": cfg.get("connection_pool_maxsize"),
        "max_retries": cfg.get("max_retries"),
    }
    safe_log = {k: v for k, v in parsed.items() if k != "token"}
    logger.debug("Loaded Influx config from %s: %s", path, safe_log)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="influx-tag-rename",
        description="Rename a tag value in one measurement of an InfluxDB v2 bucket.",
        epilog="Nothing else may write points with the old tag value while a rename runs.",
    )
    ap.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--host", help="Host to connect to, e.g. http://localhost:8086")
    ap.add_argument("--token", help="Access token")
    ap.add_argument("--org", help="Organization")
    ap.add_argument("--config", help="Path to .influx.toml with url, token and org")
    ap.add_argument("-b", "--bucket", required=True, help="Bucket the measurement is in")
    ap.add_argument("-m", "--measurement", required=True, help="Measurement to rename in")
    ap.add_argument("--tag", required=True, help="Tag key whose value is renamed")
    ap.add_argument("-o", "--old-name", required=True, help="The old tag value")
    ap.add_argument("-n", "--new-name", required=True, help="The new tag value")
    ap.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE, help="Points per write/delete round-trip")
    ap.add_argument("--start", default=DEFAULT_START, help="Only rename points at or after this time")
    ap.add_argument("--stop", default=DEFAULT_STOP, help="Only rename points before this time")
    ap.add_argument("--timeout", type=int, help="HTTP timeout in ms")
    ap.add_argument("--max-retries", type=int, help="Retry failed requests with backoff this many times")
    ap.add_argument("--verify", action="store_true", help="Only count matching points; do not write")
    ap.add_argument("--dry-run", action="store_true", help="Log every rewrite without writing or deleting")
    ap.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return ap


def job_from_args(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> RenameJob:
    env = os.environ if environ is None else environ
    cfg = load_influx_config(args.config) if args.config else {}

    def pick(flag, key, env_key=None):
        if flag is not None:
            return flag
        if cfg.get(key) is not None:
            return cfg[key]
        return env.get(env_key) if env_key else None

    try:
        start = parse_time(args.start)
        stop = parse_time(args.stop)
    except ValueError as e:
        raise ConfigError(str(e)) from e
    timeout = pick(args.timeout, "timeout")
    max_retries = pick(args.max_retries, "max_retries")
    return RenameJob(
        host=pick(args.host, "url", "INFLUXDB_V2_URL"),
        token=pick(args.token, "token", "INFLUXDB_V2_TOKEN"),
        org=pick(args.org, "org", "INFLUXDB_V2_ORG"),
        bucket=args.bucket,
        measurement=args.measurement,
        tag=args.tag,
        old_value=args.old_name,
        new_value=args.new_name,
        batch_size=args.batch_size,
        start=start,
        stop=stop,
        timeout=DEFAULT_TIMEOUT if timeout is None else timeout,
        max_retries=0 if max_retries is None else max_retries,
        connection_pool_maxsize=cfg.get("connection_pool_maxsize"),
        dry_run=args.dry_run,
    )


def run(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.verify and args.dry_run:
        print("Error: --verify and --dry-run cannot be used together.", file=sys.stderr)
        return EXIT_CONFIG

    # Set logging level based on verbosity
    if args.verbose:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    try:
        job = job_from_args(args)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG

    cancel = threading.Event()

    def on_sigint(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupted; finishing the current batch (press Ctrl-C again to abort)")
        cancel.set()

    client = build_client(job)
    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        if args.verify:
            query = fetch(client, job.bucket, job.measurement, job.tag, job.old_value,
                          org=job.org, start=job.start, stop=job.stop)
            count = sum(1 for _ in query)
            logger.info("Verify complete. Found %d points with %s=%s", count, job.tag, job.old_value)
            return EXIT_OK
        result = rename_tag(job, client, cancel)
    except QueryError as e:
        logger.error("Query failed: %s", e)
        return EXIT_QUERY
    finally:
        signal.signal(signal.SIGINT, previous)
        client.close()

    if result.ok:
        logger.info("Done. %s", result.summary())
    else:
        logger.error("Finished with problems. %s", result.summary())
    return result.exit_code


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
