import asyncio

import pytest

from core.errors import BackendError, InvalidURI
from fakes import ExplodingOperator, FakeOperator
from providers.impl import object_storage
from providers.impl.object_storage import ObjectStorageBackend, ParsedURL
from providers.impl.storage_s3 import S3StorageOperator
from providers.storage import ObjectEntry, ObjectMetadata
from schemas import GetRequest, HeadRequest, ObjectStorage, Range, Scheme

OBJECT_SCHEMES = ["s3", "gcs", "abs", "oss", "obs", "cos"]

CREDS = ObjectStorage(access_key_id="ak", access_key_secret="sk")


def _use_operator(monkeypatch, operator):
    monkeypatch.setattr(
        ObjectStorageBackend,
        "operator",
        lambda self, parsed_url, object_storage, timeout: operator,
    )


# ---------------------------------------------------------------------
# ParsedURL
# ---------------------------------------------------------------------

def test_parse_extracts_bucket_and_key():
    parsed = ParsedURL.parse("s3://my-bucket/path/to/file.bin")
    assert parsed.scheme == Scheme.S3
    assert parsed.bucket == "my-bucket"
    assert parsed.key == "path/to/file.bin"
    assert not parsed.is_dir()


@pytest.mark.parametrize("scheme", OBJECT_SCHEMES)
def test_parse_without_host_is_invalid_uri(scheme):
    with pytest.raises(InvalidURI):
        ParsedURL.parse(f"{scheme}:///key")


def test_parse_without_path_is_invalid_uri():
    with pytest.raises(InvalidURI):
        ParsedURL.parse("s3://bucket")


def test_parse_rejects_non_object_storage_scheme():
    with pytest.raises(InvalidURI):
        ParsedURL.parse("http://bucket/key")
    with pytest.raises(InvalidURI):
        ParsedURL.parse("hdfs://bucket/key")


def test_key_is_percent_decoded():
    parsed = ParsedURL.parse("s3://bucket/%2Ffile")
    assert parsed.key == "/file"

    parsed = ParsedURL.parse("oss://bucket/dir/hello%20world.txt")
    assert parsed.key == "dir/hello world.txt"


def test_directory_detection_is_trailing_slash_only():
    assert ParsedURL.parse("s3://bucket/dir/").is_dir()
    assert not ParsedURL.parse("s3://bucket/dir").is_dir()
    assert ParsedURL.parse("s3://bucket/").is_dir()
    assert ParsedURL.parse("s3://bucket/").key == ""


def test_bucket_case_is_preserved():
    assert ParsedURL.parse("cos://MyBucket-125/key").bucket == "MyBucket-125"


def test_make_url_by_entry_path_keeps_scheme_host_and_query():
    parsed = ParsedURL.parse("s3://bucket/dir/?versionId=1")
    assert parsed.make_url_by_entry_path("dir/a b.txt") == "s3://bucket/dir/a%20b.txt?versionId=1"
    assert parsed.make_url_by_entry_path("dir/sub/") == "s3://bucket/dir/sub/?versionId=1"


# ---------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------

class _NeverBuilt:
    def __init__(self, *args, **kwargs):
        raise AssertionError("operator must not be built without credentials")


def test_s3_without_credentials_fails_before_any_network_call(monkeypatch):
    monkeypatch.setattr(object_storage, "S3StorageOperator", _NeverBuilt)
    backend = ObjectStorageBackend(Scheme.S3)

    with pytest.raises(BackendError) as exc:
        asyncio.run(backend.head(HeadRequest(task_id="t1", url="s3://bucket/key")))
    assert exc.value.message == "need access_key_id and access_key_secret"

    with pytest.raises(BackendError):
        asyncio.run(backend.get(GetRequest(task_id="t1", piece_id="p1", url="s3://bucket/key")))


@pytest.mark.parametrize(
    "scheme, creds, message",
    [
        ("s3", ObjectStorage(access_key_id="ak"), "need access_key_secret"),
        ("obs", None, "need endpoint, access_key_id and access_key_secret"),
        ("cos", ObjectStorage(access_key_secret="sk"), "need endpoint and access_key_id"),
        ("abs", ObjectStorage(access_key_id="account"), "need access_key_secret"),
        ("gcs", ObjectStorage(access_key_id="ak", access_key_secret="sk"), "need credential"),
        ("oss", None, "need endpoint, access_key_id and access_key_secret"),
    ],
)
def test_missing_credentials_name_the_missing_fields(scheme, creds, message):
    backend = ObjectStorageBackend(Scheme(scheme))
    parsed = ParsedURL.parse(f"{scheme}://bucket/key")

    with pytest.raises(BackendError) as exc:
        backend.operator(parsed, creds, 5.0)
    assert exc.value.message == message


@pytest.mark.parametrize("scheme", ["oss", "obs", "cos"])
def test_s3_compatible_provider_without_endpoint_never_falls_back_to_aws(monkeypatch, scheme):
    monkeypatch.setattr(object_storage, "S3StorageOperator", _NeverBuilt)
    backend = ObjectStorageBackend(Scheme(scheme))
    parsed = ParsedURL.parse(f"{scheme}://bucket/key")

    with pytest.raises(BackendError) as exc:
        backend.operator(parsed, ObjectStorage(access_key_id="ak", access_key_secret="sk"), 5.0)
    assert exc.value.message == "need endpoint"


def test_malformed_gcs_credential_is_a_backend_error():
    backend = ObjectStorageBackend(Scheme.GCS)
    parsed = ParsedURL.parse("gcs://bucket/key")

    with pytest.raises(BackendError):
        backend.operator(parsed, ObjectStorage(credential="{not json"), 5.0)


def test_s3_operator_is_bound_to_bucket_and_timeout():
    backend = ObjectStorageBackend(Scheme.S3)
    parsed = ParsedURL.parse("s3://bucket/key")
    creds = ObjectStorage(access_key_id="ak", access_key_secret="sk", region="us-west-2")

    operator = backend.operator(parsed, creds, 7.0)

    assert isinstance(operator, S3StorageOperator)
    assert operator.bucket == "bucket"
    assert operator.s3.meta.config.connect_timeout == 7.0
    assert operator.s3.meta.config.read_timeout == 7.0


def test_oss_operator_uses_provider_endpoint():
    backend = ObjectStorageBackend(Scheme.OSS)
    parsed = ParsedURL.parse("oss://bucket/key")
    creds = ObjectStorage(access_key_id="ak", access_key_secret="sk", endpoint="oss-cn-hangzhou.aliyuncs.com")

    operator = backend.operator(parsed, creds, 5.0)

    assert operator.s3.meta.endpoint_url == "https://oss-cn-hangzhou.aliyuncs.com"


# ---------------------------------------------------------------------
# head
# ---------------------------------------------------------------------

class _ListingStub:
    def __init__(self):
        self.calls = []

    async def list(self, path, recursive=True):
        self.calls.append(("list", path, recursive))
        return [
            ObjectEntry("dir/a.txt", ObjectMetadata(10)),
            ObjectEntry("dir/b.txt", ObjectMetadata(20)),
            ObjectEntry("dir/sub/", ObjectMetadata(0, True)),
        ]

    async def stat(self, path):
        self.calls.append(("stat", path))
        return ObjectMetadata(42, True)

    async def reader(self, path, offset=0, length=None):
        raise AssertionError("head must not read the body")


def test_head_directory_lists_entries_and_stats(monkeypatch):
    stub = _ListingStub()
    _use_operator(monkeypatch, stub)
    backend = ObjectStorageBackend(Scheme.S3)

    resp = asyncio.run(backend.head(HeadRequest(task_id="t1", url="s3://bucket/dir/", object_storage=CREDS)))

    assert resp.success is True
    assert resp.error_message is None
    assert resp.content_length == 42
    assert [e.url for e in resp.entries] == [
        "s3://bucket/dir/a.txt",
        "s3://bucket/dir/b.txt",
        "s3://bucket/dir/sub/",
    ]
    assert [e.content_length for e in resp.entries] == [10, 20, 0]
    assert [e.is_dir for e in resp.entries] == [False, False, True]
    assert stub.calls == [("list", "dir/", True), ("stat", "dir/")]


def test_head_object_skips_listing(monkeypatch):
    fake = FakeOperator({"dir/a.txt": b"hello"})
    _use_operator(monkeypatch, fake)
    backend = ObjectStorageBackend(Scheme.GCS)

    resp = asyncio.run(backend.head(HeadRequest(task_id="t1", url="gcs://bucket/dir/a.txt")))

    assert resp.entries == []
    assert resp.content_length == 5
    assert fake.calls == [("stat", "dir/a.txt")]


def test_head_directory_synthesizes_subdirectories(monkeypatch):
    fake = FakeOperator({"d/x": b"1", "d/sub/y": b"22", "d/sub/deeper/z": b"333"})
    _use_operator(monkeypatch, fake)
    backend = ObjectStorageBackend(Scheme.ABS)

    resp = asyncio.run(backend.head(HeadRequest(task_id="t1", url="abs://container/d/")))

    got = {(e.url, e.content_length, e.is_dir) for e in resp.entries}
    assert got == {
        ("abs://container/d/x", 1, False),
        ("abs://container/d/sub/", 0, True),
        ("abs://container/d/sub/y", 2, False),
        ("abs://container/d/sub/deeper/", 0, True),
        ("abs://container/d/sub/deeper/z", 3, False),
    }


def test_head_wraps_provider_failures(monkeypatch):
    _use_operator(monkeypatch, ExplodingOperator(ConnectionError("connection reset")))
    backend = ObjectStorageBackend(Scheme.S3)

    with pytest.raises(BackendError) as exc:
        asyncio.run(backend.head(HeadRequest(task_id="t1", url="s3://bucket/dir/", object_storage=CREDS)))
    assert exc.value.message == "connection reset"
    assert exc.value.status_code is None


def test_head_missing_object_is_backend_error(monkeypatch):
    _use_operator(monkeypatch, FakeOperator({}))
    backend = ObjectStorageBackend(Scheme.OBS)

    with pytest.raises(BackendError):
        asyncio.run(backend.head(HeadRequest(task_id="t1", url="obs://bucket/missing")))


def test_head_invalid_url_fails_before_operator(monkeypatch):
    _use_operator(monkeypatch, ExplodingOperator(AssertionError("no operator expected")))
    backend = ObjectStorageBackend(Scheme.S3)

    with pytest.raises(InvalidURI):
        asyncio.run(backend.head(HeadRequest(task_id="t1", url="s3:///key", object_storage=CREDS)))


# ---------------------------------------------------------------------
# get
# ---------------------------------------------------------------------

SOURCE = bytes(range(64))


def test_get_range_yields_exact_bytes(monkeypatch):
    fake = FakeOperator({"blob": SOURCE}, chunk_size=3)
    _use_operator(monkeypatch, fake)
    backend = ObjectStorageBackend(Scheme.S3)

    req = GetRequest(task_id="t1", piece_id="p1", url="s3://bucket/blob", range=Range(start=10, length=5), object_storage=CREDS)

    async def _run():
        resp = await backend.get(req)
        return resp, await resp.read()

    resp, body = asyncio.run(_run())

    assert resp.success is True
    assert resp.http_status_code == 200
    assert body == SOURCE[10:15]
    assert fake.calls == [("reader", "blob", 10, 5)]


def test_get_without_range_streams_whole_object(monkeypatch):
    _use_operator(monkeypatch, FakeOperator({"a/b": SOURCE}))
    backend = ObjectStorageBackend(Scheme.COS)

    async def _run():
        resp = await backend.get(GetRequest(task_id="t1", piece_id="p1", url="cos://bucket/a/b", object_storage=CREDS))
        chunks = [chunk async for chunk in resp.reader]
        return chunks

    chunks = asyncio.run(_run())
    assert len(chunks) > 1
    assert b"".join(chunks) == SOURCE


def test_get_open_failure_is_backend_error(monkeypatch):
    _use_operator(monkeypatch, FakeOperator({}))
    backend = ObjectStorageBackend(Scheme.S3)

    with pytest.raises(BackendError):
        asyncio.run(backend.get(GetRequest(task_id="t1", piece_id="p1", url="s3://bucket/missing", object_storage=CREDS)))


def test_get_failure_mid_stream_is_backend_error(monkeypatch):
    class _Flaky(FakeOperator):
        async def _chunks(self, data):
            yield data[:4]
            raise TimeoutError("read timed out")

    _use_operator(monkeypatch, _Flaky({"blob": SOURCE}))
    backend = ObjectStorageBackend(Scheme.S3)

    async def _run():
        resp = await backend.get(GetRequest(task_id="t1", piece_id="p1", url="s3://bucket/blob", object_storage=CREDS))
        first = await resp.reader.read(4)
        assert first == SOURCE[:4]
        await resp.reader.read()

    with pytest.raises(BackendError) as exc:
        asyncio.run(_run())
    assert exc.value.message == "read timed out"


def test_scheme_is_reported_for_diagnostics():
    assert ObjectStorageBackend(Scheme.OSS).scheme() == "oss"
    with pytest.raises(ValueError):
        ObjectStorageBackend(Scheme.HTTP)
