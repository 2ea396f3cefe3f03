import re
from datetime import datetime, timezone

import pytest
from influxdb_client.client.flux_table import FluxRecord, FluxTable
from influxdb_client.rest import ApiException

from renamer import Point, RenameJob

MEASUREMENT_RE = re.compile(r'r\._measurement == "((?:[^"\\]|\\.)*)"')
TAG_FILTER_RE = re.compile(r'r\["((?:[^"\\]|\\.)*)"\] == "((?:[^"\\]|\\.)*)"')
PREDICATE_RE = re.compile(r'(\w+)="((?:[^"\\]|\\.)*)"')
RFC3339_NS_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})\.(\d{9})Z$")


def unescape(s):
    return re.sub(r"\\(.)", r"\1", s)


def rfc3339_to_ns(s):
    m = RFC3339_NS_RE.match(s)
    base = datetime.strptime(m.group(1), "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    return int(base.timestamp()) * 1_000_000_000 + int(m.group(2))


class FakeInflux:
    """In-memory stand-in for InfluxDBClient.

    Points are stored by (measurement, timestamp, tags); writing the same key
    again merges fields like the real server does. ``fail_write`` and
    ``fail_delete`` decide per request whether the server answers 500;
    ``fail_stream_after`` breaks the point stream after that many rows.
    """

    def __init__(self, points=()):
        self.points = {}
        self.writes = []
        self.deletes = []
        self.queries = []
        self.fail_write = lambda points: False
        self.fail_delete = lambda start, stop, predicate: False
        self.fail_query = False
        self.fail_stream_after = None
        self.closed = False
        for p in points:
            self.store(p)

    def store(self, p):
        key = (p.measurement,) + p.key
        old = self.points.get(key)
        fields = {**old.fields, **p.fields} if old else dict(p.fields)
        self.points[key] = Point(p.timestamp, p.measurement, dict(p.tags), fields)

    def select(self, measurement, tag=None, value=None):
        return sorted(
            (p for p in self.points.values()
             if p.measurement == measurement and (tag is None or p.tags.get(tag) == value)),
            key=lambda p: (sorted(p.tags.items()), p.timestamp),
        )

    def count(self, measurement, tag=None, value=None):
        return len(self.select(measurement, tag, value))

    def query_api(self):
        return FakeQueryApi(self)

    def write_api(self, write_options=None):
        return FakeWriteApi(self)

    def delete_api(self):
        return FakeDeleteApi(self)

    def close(self):
        self.closed = True


def server_error():
    return ApiException(status=500, reason="Internal Server Error")


class FakeQueryApi:
    def __init__(self, db):
        self.db = db

    def query(self, query, org=None):
        self.db.queries.append(query)
        if self.db.fail_query:
            raise server_error()
        measurement = unescape(MEASUREMENT_RE.search(query).group(1))
        tag, value = (unescape(g) for g in TAG_FILTER_RE.search(query).groups())
        keys = sorted({k for p in self.db.select(measurement, tag, value) for k in p.tags})
        table = FluxTable()
        table.records = [FluxRecord(0, {"_value": k}) for k in ["_field", "_measurement", "_start", "_stop"] + keys]
        return [table]

    def query_stream(self, query, org=None):
        self.db.queries.append(query)
        if self.db.fail_query:
            raise server_error()
        measurement = unescape(MEASUREMENT_RE.search(query).group(1))
        tag, value = (unescape(g) for g in TAG_FILTER_RE.search(query).groups())
        return self._stream(measurement, tag, value)

    def _stream(self, measurement, tag, value):
        for table, p in enumerate(self.db.select(measurement, tag, value)):
            if self.db.fail_stream_after is not None and table >= self.db.fail_stream_after:
                raise server_error()
            values = {
                "result": "_result",
                "table": table,
                "_start": datetime(1970, 1, 1, tzinfo=timezone.utc),
                "_stop": datetime(2262, 4, 11, tzinfo=timezone.utc),
                "_time": datetime.fromtimestamp(p.timestamp / 1e9, tz=timezone.utc),
                "_measurement": p.measurement,
                **p.tags,
                **p.fields,
                "_time_ns": p.timestamp,
            }
            yield FluxRecord(table, values)


class FakeWriteApi:
    def __init__(self, db):
        self.db = db

    def write(self, bucket, org=None, record=None, write_precision=None, **kwargs):
        points = [Point(lp._time, lp._name, dict(lp._tags), dict(lp._fields)) for lp in record]
        self.db.writes.append(points)
        if self.db.fail_write(points):
            raise server_error()
        for p in points:
            self.db.store(p)


class FakeDeleteApi:
    def __init__(self, db):
        self.db = db

    def delete(self, start, stop, predicate, bucket, org=None):
        self.db.deletes.append((start, stop, predicate))
        if self.db.fail_delete(start, stop, predicate):
            raise server_error()
        lo, hi = rfc3339_to_ns(start), rfc3339_to_ns(stop)
        match = {k: unescape(v) for k, v in PREDICATE_RE.findall(predicate)}
        measurement = match.pop("_measurement")
        for key, p in list(self.db.points.items()):
            if (p.measurement == measurement and lo <= p.timestamp <= hi
                    and all(p.tags.get(k) == v for k, v in match.items())):
                del self.db.points[key]


def make_job(**overrides):
    kwargs = dict(
        host="http://localhost:8086",
        token="secret",
        org="my-org",
        bucket="plant",
        measurement="m",
        tag="env",
        old_value="prod",
        new_value="production",
    )
    kwargs.update(overrides)
    return RenameJob(**kwargs)


@pytest.fixture
def job():
    return make_job()


@pytest.fixture
def db():
    return FakeInflux()
