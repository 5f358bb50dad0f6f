#!/usr/bin/env python3
"""In-node controller that swaps containerd onto the xspot runtime shim."""

import asyncio
import enum
import logging
import os
import shutil
import signal
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import NamedTuple, Optional, Protocol

import httpx

# ── Logging (stderr only) ────────────────────────────────────────────────

logging.basicConfig(
    level=os.environ.get("RUNTIME_SWITCH_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("runtime-switch")

# ── Config ───────────────────────────────────────────────────────────────

# The node's / is bind-mounted here inside the controller pod
NODE_ROOT = "/node"

# Relative to NODE_ROOT
CONTAINERD_CONFIG_PATH = "etc/containerd/config.toml"
STORED_CONTAINERD_CONFIG_PATH = "tmp/config.toml"

XSPOT_SHIM_URL = (
    "https://github.com/google/gvisor-containerd-shim/releases/download/"
    "v0.0.3/containerd-shim-runsc-v1.linux-amd64"
)
XSPOT_RUNTIME_URL = (
    "https://venkat-xspot-bucket.s3.us-east-2.amazonaws.com/xspot/kata-runtime"
)

BINARY_MODE = 0o777
DIR_MODE = 0o755

# runxc writes its logs to both of these
RUNTIME_DIRS = ("run/containerd/runxc", "tmp/runxc")

CHROOT_BINARY = "/usr/sbin/chroot"
SERVICE_MANAGER = ("sudo", "systemctl")

USER_AGENT = "minikube"

ADDON_NAME = "xspot"
CONFIG_TOML_TARGET_NAME = "xspot-config.toml"
ASSET_DIR = "/tmp/xspot"
ADDONS_DIR = "/etc/kubernetes/addons"

SERVICE_ACTIONS = ("stop", "start", "restart")


class BinaryArtifact(NamedTuple):
    name: str
    source_url: str
    destination: str
    mode: int = BINARY_MODE


class ServiceStep(NamedTuple):
    service: str
    action: str

    def __str__(self) -> str:
        return f"{self.action} {self.service}"


DEFAULT_ARTIFACTS = (
    BinaryArtifact("runxc", XSPOT_RUNTIME_URL, "usr/bin/runxc"),
    BinaryArtifact(
        "xspot-containerd-shim", XSPOT_SHIM_URL, "usr/bin/containerd-shim-runsc-v1"
    ),
)

# rpc-statd holds locks that race with a containerd restart, so it is
# stopped first and brought back afterwards.
CONTAINERD_RESTART_PLAN = (
    ServiceStep("rpc-statd.service", "stop"),
    ServiceStep("containerd", "restart"),
    ServiceStep("rpc-statd.service", "start"),
)


@dataclass(frozen=True)
class SwitchConfig:
    node_root: str = NODE_ROOT
    config_path: str = CONTAINERD_CONFIG_PATH
    backup_path: str = STORED_CONTAINERD_CONFIG_PATH
    artifacts: tuple[BinaryArtifact, ...] = DEFAULT_ARTIFACTS
    directories: tuple[str, ...] = RUNTIME_DIRS
    chroot_binary: str = CHROOT_BINARY
    service_manager: tuple[str, ...] = SERVICE_MANAGER
    enable_plan: tuple[ServiceStep, ...] = CONTAINERD_RESTART_PLAN
    disable_plan: tuple[ServiceStep, ...] = CONTAINERD_RESTART_PLAN
    user_agent: str = USER_AGENT
    addon_name: str = ADDON_NAME
    config_target_name: str = CONFIG_TOML_TARGET_NAME
    asset_dir: str = ASSET_DIR

    def __post_init__(self):
        for step in (*self.enable_plan, *self.disable_plan):
            if step.action not in SERVICE_ACTIONS:
                raise ValueError(f"Unsupported service action in plan: {step}")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "SwitchConfig":
        env = os.environ if environ is None else environ
        overrides = {}
        for key, attr in (
            ("RUNTIME_SWITCH_NODE_ROOT", "node_root"),
            ("RUNTIME_SWITCH_ASSET_DIR", "asset_dir"),
            ("RUNTIME_SWITCH_USER_AGENT", "user_agent"),
        ):
            value = env.get(key)
            if value:
                overrides[attr] = value
        return replace(cls(), **overrides)

    def node_path(self, rel: str) -> Path:
        # Leading slashes would make pathlib discard node_root entirely
        return Path(self.node_root) / rel.lstrip("/")

    @property
    def active_config(self) -> Path:
        return self.node_path(self.config_path)

    @property
    def backup_config(self) -> Path:
        return self.node_path(self.backup_path)


# ── Errors ───────────────────────────────────────────────────────────────


class RuntimeSwitchError(RuntimeError):
    pass


class ProvisionError(RuntimeSwitchError):
    def __init__(self, path: Path, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"creating {path}: {cause}")


class FetchError(RuntimeSwitchError):
    def __init__(self, artifact: BinaryArtifact, cause: BaseException, context: str = ""):
        self.artifact = artifact
        self.cause = cause
        detail = f"{context}: {cause}" if context else str(cause)
        super().__init__(f"downloading {artifact.name} from {artifact.source_url}: {detail}")


class SwapError(RuntimeSwitchError):
    STAGES = ("resolve", "install", "restore")

    def __init__(self, stage: str, message: str):
        if stage not in self.STAGES:
            raise ValueError(f"Unknown swap stage: {stage!r}")
        self.stage = stage
        super().__init__(f"{stage}: {message}")


class ServiceError(RuntimeSwitchError):
    def __init__(self, step: ServiceStep, output: str, cause: str):
        self.step = step
        self.output = output
        self.cause = cause
        super().__init__(f"{step}: {cause}")


class AssetNotFound(LookupError):
    pass


# ── Addon asset registry ─────────────────────────────────────────────────


@dataclass(frozen=True)
class AddonAsset:
    source_path: str
    target_dir: str
    target_name: str
    permissions: str = "0640"

    @property
    def target_path(self) -> Path:
        return Path(self.target_dir) / self.target_name


@dataclass
class Addon:
    name: str
    assets: list[AddonAsset]
    enabled_by_default: bool = False
    maintainer: str = ""
    images: dict[str, str] = field(default_factory=dict)
    registries: dict[str, str] = field(default_factory=dict)

    def asset(self, target_name: str) -> Optional[AddonAsset]:
        found = None
        for a in self.assets:
            if a.target_name == target_name:
                found = a
        return found


class AssetResolver(Protocol):
    def resolve_asset_content(self, addon_name: str, target_name: str) -> bytes: ...


class AssetRegistry:
    """Addon name -> Addon. Asset content lives at each asset's target path."""

    def __init__(self, addons: Optional[list[Addon]] = None):
        self._addons: dict[str, Addon] = {}
        for addon in addons or []:
            self.register(addon)

    def register(self, addon: Addon) -> None:
        self._addons[addon.name] = addon

    def get(self, name: str) -> Optional[Addon]:
        return self._addons.get(name)

    def resolve_asset_content(self, addon_name: str, target_name: str) -> bytes:
        addon = self._addons.get(addon_name)
        if addon is None:
            raise AssetNotFound(f"no addon named {addon_name!r}")
        asset = addon.asset(target_name)
        if asset is None:
            targets = [a.target_name for a in addon.assets]
            raise AssetNotFound(
                f"no asset matching target {target_name} among {addon_name} assets {targets}"
            )
        src = asset.target_path
        log.info(f"{target_name} asset path: {src}")
        try:
            return src.read_bytes()
        except OSError as e:
            raise AssetNotFound(f"getting contents of {asset.source_path}: {e}") from e


def default_registry(config: SwitchConfig) -> AssetRegistry:
    xspot = Addon(
        name=config.addon_name,
        assets=[
            AddonAsset("xspot/xspot-pod.yaml.tmpl", ADDONS_DIR, "xspot-pod.yaml"),
            AddonAsset(
                "xspot/xspot-runtimeclass.yaml.tmpl",
                ADDONS_DIR,
                "xspot-runtimeclass.yaml",
            ),
            AddonAsset(
                "xspot/xspot-config.toml", config.asset_dir, config.config_target_name
            ),
        ],
        enabled_by_default=False,
        maintainer="Exotanium",
        images={"XSpotAddon": "venkatnamala/xspot-addon:latest"},
        registries={"XSpotAddon": "docker.io"},
    )
    return AssetRegistry([xspot])


# ── Helpers ──────────────────────────────────────────────────────────────


async def _run(cmd: list[str], timeout: Optional[float] = None) -> tuple[int, str]:
    """Run cmd, returning (exit code, combined stdout+stderr)."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    return proc.returncode or 0, stdout.decode(errors="replace")


def _remove_if_exists(path: Path) -> None:
    if path.exists() or path.is_symlink():
        path.unlink()


# ── Filesystem provisioning ──────────────────────────────────────────────


class FilesystemProvisioner:
    def __init__(self, config: SwitchConfig):
        self.config = config

    def provision(self) -> None:
        for rel in self.config.directories:
            path = self.config.node_path(rel)
            try:
                path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            except OSError as e:
                raise ProvisionError(path, e) from e
            log.info(f"Ensured directory {path}")


# ── Binary download ──────────────────────────────────────────────────────


class BinaryFetcher:
    """Downloads runtime binaries into the node, replacing stale copies."""

    def __init__(
        self,
        config: SwitchConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # No timeout; a hung download blocks enable indefinitely
        return httpx.AsyncClient(
            headers={"User-Agent": self.config.user_agent},
            transport=self._transport,
            follow_redirects=True,
            timeout=None,
        )

    async def fetch(
        self, artifact: BinaryArtifact, client: Optional[httpx.AsyncClient] = None
    ) -> Path:
        if client is None:
            async with self._client() as own:
                return await self.fetch(artifact, own)

        dest = self.config.node_path(artifact.destination)
        log.info(f"Downloading {artifact.name} to {dest}")
        try:
            async with client.stream("GET", artifact.source_url) as resp:
                resp.raise_for_status()
                try:
                    _remove_if_exists(dest)
                except OSError as e:
                    raise FetchError(artifact, e, f"removing {dest} for overwrite") from e
                with open(dest, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
                    os.fchmod(f.fileno(), artifact.mode)
        except httpx.HTTPError as e:
            raise FetchError(artifact, e) from e
        except OSError as e:
            raise FetchError(artifact, e, f"writing {dest}") from e
        return dest

    async def fetch_all(self) -> list[Path]:
        paths = []
        async with self._client() as client:
            for artifact in self.config.artifacts:
                paths.append(await self.fetch(artifact, client))
        return paths


# ── Config swap ──────────────────────────────────────────────────────────


class ConfigSwapper:
    """Backs up the active containerd config and installs the addon's."""

    def __init__(self, config: SwitchConfig, resolver: AssetResolver):
        self.config = config
        self.resolver = resolver

    @property
    def active_path(self) -> Path:
        return self.config.active_config

    @property
    def backup_path(self) -> Path:
        return self.config.backup_config

    def install(self, target_name: Optional[str] = None) -> None:
        target_name = target_name or self.config.config_target_name
        active, backup = self.active_path, self.backup_path

        # An existing backup is left by a run that never restored; the
        # active file may already be the addon's config, so never copy over it.
        if backup.exists():
            log.warning(f"Keeping existing default config.toml at {backup}")
        else:
            log.info(f"Storing default config.toml at {backup}")
            try:
                shutil.copyfile(active, backup)
            except OSError as e:
                raise SwapError("install", f"copying default config.toml: {e}") from e

        try:
            contents = self.resolver.resolve_asset_content(
                self.config.addon_name, target_name
            )
        except AssetNotFound as e:
            raise SwapError("resolve", str(e)) from e

        log.info(f"Copying {target_name} asset to {active}")
        try:
            _remove_if_exists(active)
            active.write_bytes(contents)
        except OSError as e:
            raise SwapError("install", f"writing {target_name} to {active}: {e}") from e

    def restore(self) -> None:
        active, backup = self.active_path, self.backup_path
        if not backup.exists():
            raise SwapError("restore", f"no stored config.toml at {backup}")

        log.info(f"Restoring default config.toml at {active}")
        try:
            _remove_if_exists(active)
            shutil.copyfile(backup, active)
        except OSError as e:
            raise SwapError("restore", f"reverting back to default config.toml: {e}") from e
        try:
            backup.unlink()
        except OSError as e:
            raise SwapError("restore", f"removing {backup}: {e}") from e


# ── Service control ──────────────────────────────────────────────────────


class ServiceController(Protocol):
    async def execute(self, plan: tuple[ServiceStep, ...]) -> None: ...


class ChrootServiceController:
    """Runs systemctl inside the node's root via chroot."""

    def __init__(self, config: SwitchConfig):
        self.config = config

    def command(self, step: ServiceStep) -> list[str]:
        if step.action not in SERVICE_ACTIONS:
            raise ValueError(f"Unsupported service action: {step.action!r}")
        return [
            self.config.chroot_binary,
            self.config.node_root,
            *self.config.service_manager,
            step.action,
            step.service,
        ]

    async def execute(self, plan: tuple[ServiceStep, ...]) -> None:
        for step in plan:
            log.info(f"Running {step}...")
            try:
                code, output = await _run(self.command(step))
            except OSError as e:
                raise ServiceError(step, "", str(e)) from e
            if code != 0:
                log.error(output.rstrip())
                raise ServiceError(step, output, f"exit status {code}")
        log.info("Service plan complete")


# ── Lifecycle ────────────────────────────────────────────────────────────


class State(enum.Enum):
    IDLE = "idle"
    ENABLING = "enabling"
    RUNNING = "running"
    DISABLING = "disabling"
    TERMINATED = "terminated"


class LifecycleSupervisor:
    """
    Enable: provision dirs, download binaries, swap config, restart containerd.
    Then wait for SIGINT/SIGTERM and undo the swap before exiting.
    """

    def __init__(
        self,
        config: SwitchConfig,
        provisioner: Optional[FilesystemProvisioner] = None,
        fetcher: Optional[BinaryFetcher] = None,
        swapper: Optional[ConfigSwapper] = None,
        services: Optional[ServiceController] = None,
    ):
        self.config = config
        self.provisioner = provisioner or FilesystemProvisioner(config)
        self.fetcher = fetcher or BinaryFetcher(config)
        self.swapper = swapper or ConfigSwapper(config, default_registry(config))
        self.services = services or ChrootServiceController(config)
        self.state = State.IDLE
        self._shutdown: Optional[asyncio.Event] = None

    def _shutdown_event(self) -> asyncio.Event:
        if self._shutdown is None:
            self._shutdown = asyncio.Event()
        return self._shutdown

    def request_shutdown(self) -> None:
        self._shutdown_event().set()

    async def enable(self) -> None:
        if self.state is not State.IDLE:
            raise RuntimeSwitchError(f"cannot enable from state {self.state.value}")
        self.state = State.ENABLING
        try:
            self.provisioner.provision()
            await self.fetcher.fetch_all()
            self.swapper.install(self.config.config_target_name)
            await self.services.execute(self.config.enable_plan)
        except BaseException:
            self.state = State.IDLE
            raise
        self.state = State.RUNNING
        log.info(f"{self.config.addon_name} successfully enabled in cluster")

    async def _disable_steps(self) -> list[RuntimeSwitchError]:
        """Restore then restart. Both are attempted; returns the errors seen."""
        self.state = State.DISABLING
        log.info(f"Disabling {self.config.addon_name}...")
        errors: list[RuntimeSwitchError] = []
        try:
            try:
                self.swapper.restore()
            except RuntimeSwitchError as e:
                log.error(f"Error restoring containerd config: {e}")
                errors.append(e)
            try:
                await self.services.execute(self.config.disable_plan)
            except RuntimeSwitchError as e:
                log.error(f"Error restarting containerd: {e}")
                errors.append(e)
        finally:
            self.state = State.TERMINATED
        if not errors:
            log.info(f"Successfully disabled {self.config.addon_name}")
        return errors

    async def disable(self) -> None:
        if self.state not in (State.IDLE, State.RUNNING):
            raise RuntimeSwitchError(f"cannot disable from state {self.state.value}")
        errors = await self._disable_steps()
        if errors:
            raise errors[0]

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._shutdown_event().is_set():
            log.warning(f"Received {sig.name} while disabling, ignoring")
            return
        log.info(f"Received {sig.name}, disabling {self.config.addon_name}")
        self.request_shutdown()

    async def run(self) -> int:
        """Enable, wait for a termination signal, disable. Returns the exit code."""
        try:
            await self.enable()
        except RuntimeSwitchError as e:
            log.error(f"Error enabling {self.config.addon_name}: {e}")
            return 1

        loop = asyncio.get_running_loop()
        # Handlers stay installed until disable finishes so a repeated
        # signal cannot interrupt the restore or the restart.
        self._install_signal_handlers(loop)
        try:
            await self._shutdown_event().wait()
            errors = await self._disable_steps()
        finally:
            self._remove_signal_handlers(loop)
        if errors:
            log.error(f"Error disabling {self.config.addon_name}: {errors[0]}")
            return 1
        return 0


# ── Entry point ──────────────────────────────────────────────────────────


async def _disable_once(config: SwitchConfig) -> int:
    try:
        await LifecycleSupervisor(config).disable()
    except RuntimeSwitchError as e:
        log.error(f"Error disabling {config.addon_name}: {e}")
        return 1
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    command = args[0] if args else "enable"
    config = SwitchConfig.from_env()
    if command == "enable":
        return asyncio.run(LifecycleSupervisor(config).run())
    if command == "disable":
        return asyncio.run(_disable_once(config))
    log.error(f"Unknown command: {command!r} (expected 'enable' or 'disable')")
    return 2


if __name__ == "__main__":
    sys.exit(main())
