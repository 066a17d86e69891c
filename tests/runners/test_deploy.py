"""Deploy 聚合器测试。"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest
from pydantic import BaseModel

from ci_handoff import serde
from ci_handoff.context import ExecutionContext, Mode
from ci_handoff.errors import DeployConfigurationError, HandoffError
from ci_handoff.runners.build import BuildResult, run_build
from ci_handoff.runners.deploy import (
    ARTIFACTS_SUFFIX,
    METADATA_FILE_NAME,
    METADATA_SUFFIX,
    DeployAggregate,
    aggregate,
    persist_metadata_unit,
    run_deploy,
    run_single_deploy,
    unit_name,
)


def _unit(root: Path, key: str, payload: Any = None, artifacts: Dict[str, str] | None = None) -> Path:
    """在产物根目录下写入一个 `kb-<key>-metadata` 单元。"""

    unit = root / unit_name("kb-", key, METADATA_SUFFIX)
    unit.mkdir(parents=True)
    blob = serde.dumps({"payload": payload, "artifacts": artifacts or {}})
    (unit / METADATA_FILE_NAME).write_text(blob + "\n", encoding="utf-8")
    return unit


def _artifact(root: Path, key: str, rel: str) -> Path:
    path = root / unit_name("kb-", key, ARTIFACTS_SUFFIX) / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("<html></html>", encoding="utf-8")
    return path


def test_payloads_follow_sorted_directory_order(tmp_path: Path) -> None:
    _unit(tmp_path, "b", {"arch": "arm64"})
    _unit(tmp_path, "a", {"arch": "amd64"})
    agg = aggregate(tmp_path, "kb-")
    assert agg.build == [{"arch": "amd64"}, {"arch": "arm64"}]
    assert agg.errors == []


def test_last_unit_wins_on_artifact_name(tmp_path: Path) -> None:
    """同名产物以排序靠后的单元为准。"""

    _unit(tmp_path, "job-a", artifacts={"build": "out/a.html"})
    _unit(tmp_path, "job-b", artifacts={"build": "out/b.html"})
    agg = aggregate(tmp_path, "kb-")
    assert agg.artifacts == {"build": "out/b.html"}


def test_unit_without_metadata_is_skipped(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    _unit(tmp_path, "a", {"arch": "amd64"})
    (tmp_path / "kb-b-metadata").mkdir()
    with caplog.at_level(logging.WARNING):
        agg = aggregate(tmp_path, "kb-")
    assert agg.build == [{"arch": "amd64"}]
    assert [e.unit for e in agg.errors] == ["kb-b-metadata"]
    assert "kb-b-metadata" in caplog.text


def test_other_prefixes_and_files_are_ignored(tmp_path: Path) -> None:
    _unit(tmp_path, "a", {"n": 1})
    other = tmp_path / "site-a-metadata"
    other.mkdir()
    (other / METADATA_FILE_NAME).write_text(serde.dumps({"payload": {"n": 2}}), encoding="utf-8")
    (tmp_path / "kb-loose-metadata").write_text("not a dir", encoding="utf-8")
    assert aggregate(tmp_path, "kb-").build == [{"n": 1}]


def test_timestamps_are_restored(tmp_path: Path) -> None:
    ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    _unit(tmp_path, "amd64", {"arch": "amd64", "timestamp": ts})
    payload = aggregate(tmp_path, "kb-").build[0]
    assert isinstance(payload["timestamp"], datetime) and payload["timestamp"] == ts


def test_absent_payload_is_not_appended(tmp_path: Path) -> None:
    _unit(tmp_path, "a", None, {"build": "out"})
    agg = aggregate(tmp_path, "kb-")
    assert agg.build == []
    assert agg.artifacts == {"build": "out"}


def test_invalid_json_unit_is_skipped(tmp_path: Path) -> None:
    unit = tmp_path / "kb-a-metadata"
    unit.mkdir()
    (unit / METADATA_FILE_NAME).write_text("{broken", encoding="utf-8")
    _unit(tmp_path, "b", {"n": 2})
    agg = aggregate(tmp_path, "kb-")
    assert agg.build == [{"n": 2}]
    assert agg.errors[0].unit == "kb-a-metadata"


def test_bad_payload_still_merges_artifacts(tmp_path: Path) -> None:
    """payload 解码失败只跳过 payload，产物仍然合并。"""

    unit = tmp_path / "kb-a-metadata"
    unit.mkdir()
    doc = {
        "json": {"payload": {"ts": "not-a-date"}, "artifacts": {"build": "out/index.html"}},
        "meta": {"values": {"payload.ts": ["Date"]}},
    }
    (unit / METADATA_FILE_NAME).write_text(json.dumps(doc), encoding="utf-8")
    agg = aggregate(tmp_path, "kb-")
    assert agg.build == []
    assert agg.artifacts == {"build": "out/index.html"}
    assert len(agg.errors) == 1 and "Date" in agg.errors[0].reason


class _Payload(BaseModel):
    arch: str
    digest: str


def test_payload_schema_rejects_evolved_payload(tmp_path: Path) -> None:
    _unit(tmp_path, "a", {"arch": "amd64", "digest": "sha256:1"})
    _unit(tmp_path, "b", {"arch": "arm64"})
    agg = aggregate(tmp_path, "kb-", payload_schema=_Payload)
    assert agg.build == [_Payload(arch="amd64", digest="sha256:1")]
    assert [e.unit for e in agg.errors] == ["kb-b-metadata"]


def test_artifacts_resolved_against_artifact_units(tmp_path: Path) -> None:
    _unit(tmp_path, "a", artifacts={"build": "./out/index.html", "missing": "./gone.txt"})
    target = _artifact(tmp_path, "a", "out/index.html")
    agg = aggregate(tmp_path, "kb-")
    assert agg.artifacts["build"] == os.path.join(str(tmp_path / "kb-a-artifacts"), "out/index.html")
    assert Path(agg.artifacts["build"]) == target
    assert agg.artifacts["missing"] == "./gone.txt"


def test_run_deploy_invokes_once(github_env: Dict[str, str], monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    root = tmp_path / "artifacts"
    _unit(root, "amd64", {"arch": "amd64"}, {"build": "dist"})
    _unit(root, "arm64", {"arch": "arm64"})
    monkeypatch.setenv("ARTIFACTS_DIR", str(root))
    monkeypatch.setenv("CI_NAME", "kb-")
    monkeypatch.setenv("MATRIX_VALUES_JSON", '{"region":"eu"}')
    calls: List[DeployAggregate] = []

    def fn(ctx: ExecutionContext, agg: DeployAggregate) -> None:
        assert ctx.event == {"before": "abc123"}
        calls.append(agg)

    returned = run_deploy(fn)
    assert len(calls) == 1 and calls[0] is returned
    assert calls[0].matrix == {"region": "eu"}
    assert [p["arch"] for p in calls[0].build] == ["amd64", "arm64"]
    assert calls[0].artifacts == {"build": "dist"}


@pytest.mark.parametrize("missing", ["ARTIFACTS_DIR", "CI_NAME"])
def test_run_deploy_requires_configuration(
    github_env: Dict[str, str], monkeypatch: pytest.MonkeyPatch, tmp_path: Path, missing: str
) -> None:
    monkeypatch.setenv("ARTIFACTS_DIR", str(tmp_path))
    monkeypatch.setenv("CI_NAME", "kb-")
    monkeypatch.delenv(missing)
    called: List[int] = []
    with pytest.raises(DeployConfigurationError, match=missing):
        run_deploy(lambda ctx, agg: called.append(1))
    assert called == []


def test_run_deploy_unreadable_root_is_fatal(
    github_env: Dict[str, str], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("ARTIFACTS_DIR", str(tmp_path / "missing"))
    monkeypatch.setenv("CI_NAME", "kb-")
    with pytest.raises(DeployConfigurationError):
        run_deploy(lambda ctx, agg: None)


def test_run_deploy_declare_mode() -> None:
    assert run_deploy(lambda ctx, agg: None, mode=Mode.DECLARE) is None
    assert run_single_deploy(lambda ctx, agg: None, mode=Mode.DECLARE) is None


def test_deploy_exception_propagates(
    github_env: Dict[str, str], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("ARTIFACTS_DIR", str(tmp_path))
    monkeypatch.setenv("CI_NAME", "kb-")

    def fn(ctx: ExecutionContext, agg: DeployAggregate) -> None:
        raise RuntimeError("provision failed")

    with pytest.raises(RuntimeError, match="provision failed"):
        run_deploy(fn)


def test_build_to_deploy_handoff(
    github_env: Dict[str, str], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """build 输出经 persist 后可被 deploy 聚合，时间类型保持不变。"""

    ts = datetime(2024, 5, 1, tzinfo=timezone.utc)
    root = tmp_path / "artifacts"
    for arch in ("amd64", "arm64"):
        monkeypatch.setenv("MATRIX_VALUES_JSON", json.dumps({"arch": arch}))
        blob = run_build(
            lambda ctx, m: BuildResult(
                payload={"arch": m["arch"], "timestamp": ts},
                artifacts={"image": f"./image-{m['arch']}.tar"},
            )
        )
        assert blob is not None
        persist_metadata_unit(root / unit_name("kb-", arch, METADATA_SUFFIX), blob)
        _artifact(root, arch, f"image-{arch}.tar")

    monkeypatch.setenv("ARTIFACTS_DIR", str(root))
    monkeypatch.setenv("CI_NAME", "kb-")
    monkeypatch.delenv("MATRIX_VALUES_JSON")
    agg = run_deploy(lambda ctx, a: None)
    assert agg is not None
    assert [p["arch"] for p in agg.build] == ["amd64", "arm64"]
    assert all(p["timestamp"] == ts for p in agg.build)
    # 同名产物取排序靠后的 arm64
    assert agg.artifacts["image"] == os.path.join(
        str(root / "kb-arm64-artifacts"), "image-arm64.tar"
    )


def test_single_deploy_from_build_output(
    github_env: Dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    workspace = Path(github_env["GITHUB_WORKSPACE"])
    (workspace / "dist").mkdir()
    (workspace / "dist" / "index.html").write_text("hi", encoding="utf-8")
    blob = serde.dumps({"payload": {"version_id": "v1"}, "artifacts": {"build": "./dist/index.html"}})
    monkeypatch.setenv("BUILD_OUTPUT", blob)
    seen: List[DeployAggregate] = []
    run_single_deploy(lambda ctx, agg: seen.append(agg))
    assert seen[0].build == [{"version_id": "v1"}]
    assert seen[0].artifacts == {"build": os.path.join(str(workspace), "dist/index.html")}


def test_single_deploy_requires_build_output(github_env: Dict[str, str]) -> None:
    with pytest.raises(DeployConfigurationError, match="BUILD_OUTPUT"):
        run_single_deploy(lambda ctx, agg: None)


def test_single_deploy_malformed_output_is_recorded(
    github_env: Dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BUILD_OUTPUT", "not json")
    agg = run_single_deploy(lambda ctx, a: None)
    assert agg is not None and agg.build == [] and agg.artifacts == {}
    assert agg.errors[0].unit == "BUILD_OUTPUT"


def test_persist_metadata_unit(tmp_path: Path) -> None:
    path = persist_metadata_unit(tmp_path / "kb-a-metadata", '  {"json": {}}\n')
    assert path.name == METADATA_FILE_NAME
    assert path.read_text(encoding="utf-8") == '{"json": {}}'
    with pytest.raises(HandoffError):
        persist_metadata_unit(tmp_path / "kb-b-metadata", "metadata=oops")
    assert not (tmp_path / "kb-b-metadata").exists()
