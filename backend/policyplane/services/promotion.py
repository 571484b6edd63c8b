"""Promote native snapshots to compiled wasm artifacts."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Iterable, Protocol

import requests

from .. import schemas
from .errors import CompilationFailed, InvalidState

# purpose: swap a snapshot's native artifact for the compiler's wasm bundle
# inputs: persisted Snapshot, its rules, a RuleCompiler
# outputs: new Snapshot copy with artifact_format="wasm", checksum and size from the compiler
# status: pilot

logger = logging.getLogger(__name__)

COMPILER_URL = os.getenv("PKG_COMPILER_URL", "http://localhost:8002")
COMPILER_TIMEOUT_SECONDS = float(os.getenv("PKG_COMPILER_TIMEOUT_SECONDS", "30"))
COMPILE_ENTRYPOINT = "data.pkg.result"
_HASH_KEYS = ("artifact_hash", "sha256", "checksum", "bundle_sha256")


class RuleCompiler(Protocol):
    async def compile(self, snapshot_id: int) -> schemas.CompileResult:
        ...


def parse_compile_response(payload: dict[str, Any]) -> schemas.CompileResult:
    """Normalise the compiler's JSON body into a CompileResult."""

    artifact_hash = next((payload[key] for key in _HASH_KEYS if payload.get(key)), None)
    if not artifact_hash:
        raise CompilationFailed("compiler response carried no artifact hash")
    size = payload.get("size_bytes", payload.get("sizeBytes"))
    return schemas.CompileResult(
        compiled_count=int(payload.get("compiled_count", payload.get("compiledCount", 0)) or 0),
        artifact_hash=str(artifact_hash),
        size_bytes=int(size) if size is not None else None,
    )


class HttpRuleCompiler:
    """Call the remote compile endpoint for a snapshot."""

    def __init__(
        self,
        base_url: str = COMPILER_URL,
        timeout: float = COMPILER_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def compile_sync(self, snapshot_id: int) -> schemas.CompileResult:
        url = f"{self.base_url}/api/v1/pkg/snapshots/{snapshot_id}/compile-rules"
        try:
            r = self.session.post(url, json={"entrypoint": COMPILE_ENTRYPOINT}, timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as exc:
            raise CompilationFailed(f"compile request for snapshot {snapshot_id} failed: {exc}") from exc
        return parse_compile_response(body)

    async def compile(self, snapshot_id: int) -> schemas.CompileResult:
        return await asyncio.to_thread(self.compile_sync, snapshot_id)


class ArtifactPromoter:
    """Promote a persisted native snapshot through a RuleCompiler."""

    def __init__(self, compiler: RuleCompiler) -> None:
        self.compiler = compiler

    async def promote(
        self,
        snapshot: schemas.Snapshot,
        rules: Iterable[schemas.Rule] = (),
    ) -> schemas.Snapshot:
        if snapshot.id < 1:
            raise InvalidState("cannot promote an unsaved draft")
        if snapshot.artifact_format == "wasm":
            return snapshot

        try:
            result = await self.compiler.compile(snapshot.id)
        except CompilationFailed:
            raise
        except Exception as exc:
            raise CompilationFailed(f"compiler failed for snapshot {snapshot.id}: {exc}") from exc
        if not result.artifact_hash:
            raise CompilationFailed(f"compiler returned no artifact hash for snapshot {snapshot.id}")

        compiled = len([rule for rule in rules if rule.snapshot_id == snapshot.id])
        logger.info(
            "Compiled snapshot %s (%s rules reported, %s known)",
            snapshot.version,
            result.compiled_count,
            compiled,
        )
        return snapshot.model_copy(
            update={
                "artifact_format": "wasm",
                "checksum": result.artifact_hash,
                "size_bytes": result.size_bytes if result.size_bytes is not None else snapshot.size_bytes,
            }
        )
