from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

import runtime_switch as rs

ORIGINAL_CONFIG = b'version = 2\n[plugins."io.containerd.grpc.v1.cri"]\n  sandbox_image = "pause:3.1"\n'
XSPOT_CONFIG = b'version = 2\n[plugins.cri.containerd.runtimes.runxc]\n  runtime_type = "io.containerd.runsc.v1"\n'

SHIM_URL = "https://downloads.test/containerd-shim-runsc-v1"
RUNTIME_URL = "https://downloads.test/runxc"


class RecordingServiceController:
    """Records every step it is asked to run; fails on the configured step."""

    def __init__(self, fail_on: Optional[rs.ServiceStep] = None, log_to: Optional[list] = None):
        self.fail_on = fail_on
        self.plans: list[tuple[rs.ServiceStep, ...]] = []
        self.steps: list[rs.ServiceStep] = []
        self._log = log_to

    async def execute(self, plan):
        self.plans.append(tuple(plan))
        if self._log is not None:
            self._log.append("execute")
        for step in plan:
            self.steps.append(step)
            if step == self.fail_on:
                raise rs.ServiceError(step, "Job for containerd.service failed.\n", "exit status 1")


class StaticResolver:
    def __init__(self, assets: dict[tuple[str, str], bytes]):
        self.assets = assets
        self.calls: list[tuple[str, str]] = []

    def resolve_asset_content(self, addon_name: str, target_name: str) -> bytes:
        self.calls.append((addon_name, target_name))
        try:
            return self.assets[(addon_name, target_name)]
        except KeyError:
            raise rs.AssetNotFound(f"no asset matching target {target_name}") from None


def make_transport(
    bodies: dict[str, bytes], fail: Optional[dict[str, Exception]] = None, seen: Optional[list] = None
) -> httpx.MockTransport:
    fail = fail or {}

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if seen is not None:
            seen.append(request)
        if url in fail:
            raise fail[url]
        if url not in bodies:
            return httpx.Response(404, content=b"not found")
        return httpx.Response(200, content=bodies[url])

    return httpx.MockTransport(handler)


@pytest.fixture
def node_root(tmp_path: Path) -> Path:
    root = tmp_path / "node"
    (root / "etc" / "containerd").mkdir(parents=True)
    (root / "usr" / "bin").mkdir(parents=True)
    (root / "tmp").mkdir(parents=True)
    (root / "etc" / "containerd" / "config.toml").write_bytes(ORIGINAL_CONFIG)
    return root


@pytest.fixture
def switch_config(node_root: Path) -> rs.SwitchConfig:
    return rs.SwitchConfig(
        node_root=str(node_root),
        artifacts=(
            rs.BinaryArtifact("runxc", RUNTIME_URL, "usr/bin/runxc"),
            rs.BinaryArtifact(
                "xspot-containerd-shim", SHIM_URL, "usr/bin/containerd-shim-runsc-v1"
            ),
        ),
    )


@pytest.fixture
def resolver() -> StaticResolver:
    return StaticResolver({("xspot", "xspot-config.toml"): XSPOT_CONFIG})


@pytest.fixture
def make_supervisor(
    switch_config: rs.SwitchConfig, resolver: StaticResolver
) -> Callable[..., rs.LifecycleSupervisor]:
    def _make(
        services: Optional[RecordingServiceController] = None,
        transport: Optional[httpx.MockTransport] = None,
        config: Optional[rs.SwitchConfig] = None,
    ) -> rs.LifecycleSupervisor:
        cfg = config or switch_config
        if transport is None:
            transport = make_transport({RUNTIME_URL: b"\x7fELF runxc", SHIM_URL: b"\x7fELF shim"})
        return rs.LifecycleSupervisor(
            cfg,
            fetcher=rs.BinaryFetcher(cfg, transport=transport),
            swapper=rs.ConfigSwapper(cfg, resolver),
            services=services or RecordingServiceController(),
        )

    return _make


_FAKE_CHROOT_SCRIPT = """#!/usr/bin/env python3
import json
import os
import sys

log_path = os.environ["FAKE_CHROOT_LOG"]
with open(log_path, "a") as f:
    f.write(json.dumps(sys.argv[1:]) + "\\n")

fail = os.environ.get("FAKE_CHROOT_FAIL", "")
if fail and " ".join(sys.argv[-2:]) == fail:
    print("Failed to " + fail + ": Unit not found.")
    print("see journalctl -xe", file=sys.stderr)
    sys.exit(5)
print("ok")
"""


@pytest.fixture
def fake_chroot(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "chroot"
    script.write_text(_FAKE_CHROOT_SCRIPT)
    script.chmod(0o755)

    log_file = tmp_path / "chroot-calls.jsonl"
    monkeypatch.setenv("FAKE_CHROOT_LOG", str(log_file))
    monkeypatch.delenv("FAKE_CHROOT_FAIL", raising=False)
    return {"binary": script, "log": log_file}


def read_chroot_calls(log_file: Path) -> list[list[str]]:
    if not log_file.exists():
        return []
    return [json.loads(line) for line in log_file.read_text().splitlines() if line]
