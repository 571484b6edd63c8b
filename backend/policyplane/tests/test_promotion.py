import pytest
import requests

from policyplane import schemas
from policyplane.services.errors import CompilationFailed, InvalidState
from policyplane.services.promotion import (
    ArtifactPromoter,
    HttpRuleCompiler,
    parse_compile_response,
)


class FakeCompiler:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result or schemas.CompileResult(
            compiled_count=2, artifact_hash="a" * 64, size_bytes=4096
        )
        self.error = error
        self.calls: list[int] = []

    async def compile(self, snapshot_id: int) -> schemas.CompileResult:
        self.calls.append(snapshot_id)
        if self.error:
            raise self.error
        return self.result


def _snapshot(**overrides) -> schemas.Snapshot:
    values = {"id": 3, "version": "router-v1.0.1", "artifact_format": "native", "size_bytes": 321}
    values.update(overrides)
    return schemas.Snapshot(**values)


@pytest.mark.asyncio
async def test_promote_swaps_native_for_wasm():
    compiler = FakeCompiler()
    snapshot = _snapshot()

    promoted = await ArtifactPromoter(compiler).promote(snapshot, [])

    assert compiler.calls == [3]
    assert promoted.artifact_format == "wasm"
    assert promoted.checksum == "a" * 64
    assert promoted.size_bytes == 4096
    assert snapshot.artifact_format == "native"


@pytest.mark.asyncio
async def test_promote_is_idempotent_for_wasm():
    compiler = FakeCompiler()
    snapshot = _snapshot(artifact_format="wasm", checksum="b" * 64)

    promoted = await ArtifactPromoter(compiler).promote(snapshot, [])

    assert promoted == snapshot
    assert compiler.calls == []


@pytest.mark.asyncio
async def test_promote_rejects_unsaved_draft():
    with pytest.raises(InvalidState, match="unsaved draft"):
        await ArtifactPromoter(FakeCompiler()).promote(_snapshot(id=0), [])


@pytest.mark.asyncio
async def test_promote_falls_back_to_native_size():
    compiler = FakeCompiler(schemas.CompileResult(compiled_count=1, artifact_hash="c" * 64))

    promoted = await ArtifactPromoter(compiler).promote(_snapshot(), [])

    assert promoted.size_bytes == 321


@pytest.mark.asyncio
async def test_compiler_errors_surface_as_compilation_failed():
    compiler = FakeCompiler(error=RuntimeError("boom"))
    snapshot = _snapshot()

    with pytest.raises(CompilationFailed, match="boom"):
        await ArtifactPromoter(compiler).promote(snapshot, [])
    assert snapshot.artifact_format == "native"


@pytest.mark.asyncio
async def test_empty_artifact_hash_is_rejected():
    compiler = FakeCompiler(schemas.CompileResult(compiled_count=0, artifact_hash=""))

    with pytest.raises(CompilationFailed):
        await ArtifactPromoter(compiler).promote(_snapshot(), [])


def test_parse_compile_response_accepts_alternate_hash_keys():
    result = parse_compile_response({"compiled_count": 4, "bundle_sha256": "d" * 64, "size_bytes": 10})

    assert result.artifact_hash == "d" * 64
    assert result.compiled_count == 4
    assert result.size_bytes == 10

    with pytest.raises(CompilationFailed):
        parse_compile_response({"compiled_count": 4})


class _Response:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class _Session:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append((url, json, timeout))
        return self.response


@pytest.mark.asyncio
async def test_http_compiler_posts_entrypoint():
    session = _Session(_Response({"compiled_count": 2, "sha256": "e" * 64}))
    compiler = HttpRuleCompiler("http://compiler:8002/", timeout=5, session=session)

    result = await compiler.compile(11)

    url, body, timeout = session.requests[0]
    assert url == "http://compiler:8002/api/v1/pkg/snapshots/11/compile-rules"
    assert body == {"entrypoint": "data.pkg.result"}
    assert timeout == 5
    assert result.artifact_hash == "e" * 64


def test_http_compiler_wraps_http_errors():
    compiler = HttpRuleCompiler(session=_Session(_Response({}, status_code=502)))

    with pytest.raises(CompilationFailed):
        compiler.compile_sync(4)
