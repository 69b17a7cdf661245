"""Streaming graph models, validation and on-disk store.

The graph describes the media pipeline of a streaming launch (launch ->
runner -> compositor -> encoders -> sink). It is never executed here; it only
gates whether a streaming launch may proceed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiofiles  # type: ignore[import-untyped]
from pydantic import Field, ValidationError

from dillinger.shared.enums import DeviceCheck, IssueSeverity, MediaType, ValidationStatus
from dillinger.shared.models import EntityModel, iso_now

logger = logging.getLogger(__name__)

DeviceExists = Callable[[str], bool]

REQUIRED_ATTRIBUTES: dict[str, tuple[str, ...]] = {
    "VirtualMonitor": ("width", "height", "refreshRate"),
    "VideoEncoder": ("codec", "bitrateKbps"),
    "AudioEncoder": ("codec", "bitrateKbps"),
    "SunshineSink": ("ports",),
    "WebRTCSink": ("whipUrl",),
    "RTMPTwitchSink": ("endpoint", "streamKeyRef"),
    "FileRecordingSink": ("path", "container"),
}

# Host capabilities checked on every run; only the blocking ones gate a launch
HOST_DEVICES: dict[str, str] = {
    "drm": "/dev/dri",
    "uinput": "/dev/uinput",
    "pulse": "/run/dillinger/pulse-socket",
}
BLOCKING_DEVICES = frozenset({"drm", "uinput"})


# ── Models ──────────────────────────────────────────────────────


class PortContract(EntityModel):
    media_type: MediaType
    caps: dict[str, Any] = Field(default_factory=dict)


class GraphPort(EntityModel):
    id: str
    label: str = ""
    contract: PortContract
    required: bool = False


class NodeRuntime(EntityModel):
    location: str | None = None
    privileges: tuple[str, ...] = ()
    devices: tuple[str, ...] = ()
    network: str | None = None


class GraphNode(EntityModel):
    id: str
    type: str
    display_name: str = ""
    inputs: tuple[GraphPort, ...] = ()
    outputs: tuple[GraphPort, ...] = ()
    attributes: dict[str, Any] = Field(default_factory=dict)
    runtime: NodeRuntime | None = None

    def input_port(self, port_id: str) -> GraphPort | None:
        return next((p for p in self.inputs if p.id == port_id), None)

    def output_port(self, port_id: str) -> GraphPort | None:
        return next((p for p in self.outputs if p.id == port_id), None)


class GraphEdge(EntityModel):
    """Directed connection ``from.out -> to.in``."""

    id: str
    from_node: str = Field(alias="from")
    out: str
    to: str
    in_port: str = Field(alias="in")


class StreamingGraphDefinition(EntityModel):
    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()


class ValidationIssue(EntityModel):
    severity: IssueSeverity
    message: str
    node_id: str | None = None
    port_id: str | None = None
    edge_id: str | None = None
    suggested_fix: str | None = None


class ValidationResult(EntityModel):
    status: ValidationStatus = ValidationStatus.UNKNOWN
    issues: tuple[ValidationIssue, ...] = ()
    device_checks: dict[str, DeviceCheck] = Field(default_factory=dict)
    last_run_at: str | None = None

    @property
    def is_blocking(self) -> bool:
        return self.status == ValidationStatus.BLOCKING


class GraphPreset(EntityModel):
    id: str
    name: str
    description: str = ""
    is_factory: bool = False
    created_at: str = Field(default_factory=iso_now)
    updated_at: str = Field(default_factory=iso_now)
    graph: StreamingGraphDefinition


class StreamingGraphStore(EntityModel):
    schema_version: str = "1.0"
    node_schema_versions: dict[str, str] = Field(default_factory=dict)
    default_preset_id: str
    presets: tuple[GraphPreset, ...] = ()
    validation: ValidationResult = Field(default_factory=ValidationResult)

    @property
    def default_preset(self) -> GraphPreset | None:
        return next((p for p in self.presets if p.id == self.default_preset_id), None)


# ── Validation ──────────────────────────────────────────────────


def _port(port_id: str, media_type: MediaType, *, label: str = "", required: bool = False) -> dict[str, Any]:
    return {"id": port_id, "label": label, "contract": {"mediaType": media_type.value}, "required": required}


def default_graph_store() -> StreamingGraphStore:
    """Factory preset: launch -> runner -> compositor -> encoders -> Moonlight."""
    nodes = [
        {
            "id": "launch",
            "type": "GameLaunch",
            "displayName": "Launch",
            "outputs": [_port("control", MediaType.CONTROL, label="Control")],
            "attributes": {"launchMode": "auto", "workingDir": "/games"},
        },
        {
            "id": "runner",
            "type": "RunnerContainer",
            "displayName": "Runner",
            "inputs": [_port("control", MediaType.CONTROL, label="Control", required=True)],
            "outputs": [
                _port("video", MediaType.VIDEO_RAW, label="Video"),
                _port("audio", MediaType.AUDIO_RAW, label="Audio"),
            ],
            "attributes": {"image": "runner-base", "gpu": "auto"},
        },
        {
            "id": "comp",
            "type": "VirtualCompositor",
            "displayName": "Compositor",
            "inputs": [_port("video", MediaType.VIDEO_RAW, label="Video In")],
            "outputs": [_port("video", MediaType.VIDEO_RAW, label="Video Out")],
            "attributes": {"compositor": "sway"},
        },
        {
            "id": "venc",
            "type": "VideoEncoder",
            "displayName": "Video Encode",
            "inputs": [_port("video", MediaType.VIDEO_RAW, label="Video In", required=True)],
            "outputs": [_port("video", MediaType.VIDEO_ENCODED, label="Video Out")],
            "attributes": {"codec": "h264", "bitrateKbps": 30000, "gopSeconds": 1, "preset": "quality"},
        },
        {
            "id": "aenc",
            "type": "AudioEncoder",
            "displayName": "Audio Encode",
            "inputs": [_port("audio", MediaType.AUDIO_RAW, label="Audio In", required=True)],
            "outputs": [_port("audio", MediaType.AUDIO_ENCODED, label="Audio Out")],
            "attributes": {"codec": "opus", "bitrateKbps": 128, "sampleRate": 48000, "channels": 2},
        },
        {
            "id": "moonlight",
            "type": "MoonlightSink",
            "displayName": "Moonlight",
            "inputs": [
                _port("video", MediaType.VIDEO_ENCODED, label="Video In", required=True),
                _port("audio", MediaType.AUDIO_ENCODED, label="Audio In", required=True),
            ],
            "attributes": {"port": 47984, "protocol": "moonlight"},
        },
    ]
    edges = [
        {"id": "edge-launch-runner", "from": "launch", "out": "control", "to": "runner", "in": "control"},
        {"id": "edge-runner-comp", "from": "runner", "out": "video", "to": "comp", "in": "video"},
        {"id": "edge-comp-venc", "from": "comp", "out": "video", "to": "venc", "in": "video"},
        {"id": "edge-runner-audio", "from": "runner", "out": "audio", "to": "aenc", "in": "audio"},
        {"id": "edge-venc-moonlight", "from": "venc", "out": "video", "to": "moonlight", "in": "video"},
        {"id": "edge-aenc-moonlight", "from": "aenc", "out": "audio", "to": "moonlight", "in": "audio"},
    ]
    return StreamingGraphStore.model_validate(
        {
            "defaultPresetId": "preset-default",
            "presets": [
                {
                    "id": "preset-default",
                    "name": "Moonlight Gaming",
                    "isFactory": True,
                    "graph": {"nodes": nodes, "edges": edges},
                }
            ],
        }
    )


def _structural_issues(graph: StreamingGraphDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    nodes = {node.id: node for node in graph.nodes}

    for node_id, count in Counter(node.id for node in graph.nodes).items():
        if count > 1:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.BLOCKING, node_id=node_id, message=f"Duplicate node id: {node_id}"
                )
            )

    for node in graph.nodes:
        for key in REQUIRED_ATTRIBUTES.get(node.type, ()):
            if key not in node.attributes:
                issues.append(
                    ValidationIssue(
                        severity=IssueSeverity.BLOCKING,
                        node_id=node.id,
                        message=f'Missing required attribute "{key}" for {node.type}',
                        suggested_fix=f"Provide {key} in node attributes.",
                    )
                )

    for edge_id, count in Counter(edge.id for edge in graph.edges).items():
        if count > 1:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.BLOCKING, edge_id=edge_id, message=f"Duplicate edge id: {edge_id}"
                )
            )

    connected: set[tuple[str, str]] = set()
    touched: set[str] = set()
    for edge in graph.edges:
        source = nodes.get(edge.from_node)
        target = nodes.get(edge.to)
        if source is None:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.BLOCKING,
                    edge_id=edge.id,
                    message=f"Edge references missing source node: {edge.from_node}",
                )
            )
        if target is None:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.BLOCKING,
                    edge_id=edge.id,
                    message=f"Edge references missing target node: {edge.to}",
                )
            )
        if source is None or target is None:
            continue

        touched.update((source.id, target.id))
        out_port = source.output_port(edge.out)
        in_port = target.input_port(edge.in_port)
        if out_port is None:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.BLOCKING,
                    edge_id=edge.id,
                    node_id=source.id,
                    port_id=edge.out,
                    message=f"Edge references missing output port: {edge.out}",
                )
            )
        if in_port is None:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.BLOCKING,
                    edge_id=edge.id,
                    node_id=target.id,
                    port_id=edge.in_port,
                    message=f"Edge references missing input port: {edge.in_port}",
                )
            )
            continue
        connected.add((target.id, in_port.id))
        if out_port is not None and out_port.contract.media_type != in_port.contract.media_type:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.BLOCKING,
                    edge_id=edge.id,
                    message=(
                        f"Port type mismatch: {out_port.contract.media_type.value} -> "
                        f"{in_port.contract.media_type.value}"
                    ),
                )
            )

    for node in graph.nodes:
        for port in node.inputs:
            if port.required and (node.id, port.id) not in connected:
                issues.append(
                    ValidationIssue(
                        severity=IssueSeverity.BLOCKING,
                        node_id=node.id,
                        port_id=port.id,
                        message=f"Required input {node.id}.{port.id} is not connected",
                        suggested_fix=f"Connect a {port.contract.media_type.value} output to {node.id}.{port.id}.",
                    )
                )
        if len(graph.nodes) > 1 and node.id not in touched:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.WARNING,
                    node_id=node.id,
                    message=f"Node {node.id} is not connected to the graph",
                    suggested_fix="Connect the node or remove it from the preset.",
                )
            )

    return issues


def _check_device(device_exists: DeviceExists, path: str) -> DeviceCheck:
    try:
        return DeviceCheck.OK if device_exists(path) else DeviceCheck.MISSING
    except OSError:
        return DeviceCheck.ERROR


def _device_issues(
    graph: StreamingGraphDefinition, device_exists: DeviceExists
) -> tuple[list[ValidationIssue], dict[str, DeviceCheck]]:
    issues: list[ValidationIssue] = []
    checks: dict[str, DeviceCheck] = {}

    for name, path in HOST_DEVICES.items():
        checks[name] = _check_device(device_exists, path)
        if name in BLOCKING_DEVICES and checks[name] != DeviceCheck.OK:
            issues.append(
                ValidationIssue(severity=IssueSeverity.BLOCKING, message=f"{name} device not available ({path})")
            )

    for node in graph.nodes:
        if node.runtime is None:
            continue
        for path in node.runtime.devices:
            if path not in checks:
                checks[path] = _check_device(device_exists, path)
            if checks[path] != DeviceCheck.OK:
                issues.append(
                    ValidationIssue(
                        severity=IssueSeverity.BLOCKING,
                        node_id=node.id,
                        message=f"Device {path} required by {node.id} is not available",
                        suggested_fix=f"Pass {path} through to the daemon container.",
                    )
                )
    return issues, checks


def _summarize(issues: list[ValidationIssue], checks: dict[str, DeviceCheck]) -> ValidationResult:
    if any(issue.severity == IssueSeverity.BLOCKING for issue in issues):
        status = ValidationStatus.BLOCKING
    elif issues:
        status = ValidationStatus.WARNING
    else:
        status = ValidationStatus.OK
    return ValidationResult(status=status, issues=tuple(issues), device_checks=checks, last_run_at=iso_now())


def validate_graph(
    graph: StreamingGraphDefinition,
    *,
    device_exists: DeviceExists | None = os.path.exists,
) -> ValidationResult:
    """Validate one graph definition.

    Args:
        graph: The definition to check.
        device_exists: Existence check for device paths; ``None`` skips device checks.

    Returns:
        Result whose status is ``blocking`` if any blocking issue was found,
        ``warning`` if only warnings were found, ``ok`` otherwise.
    """
    issues = _structural_issues(graph)
    checks: dict[str, DeviceCheck] = {}
    if device_exists is not None:
        device_issues, checks = _device_issues(graph, device_exists)
        issues.extend(device_issues)
    return _summarize(issues, checks)


def validate_store(
    store: StreamingGraphStore,
    *,
    device_exists: DeviceExists | None = os.path.exists,
) -> ValidationResult:
    """Validate every preset in the store plus the default-preset reference."""
    issues: list[ValidationIssue] = []
    for preset_id, count in Counter(p.id for p in store.presets).items():
        if count > 1:
            issues.append(ValidationIssue(severity=IssueSeverity.BLOCKING, message=f"Duplicate preset id: {preset_id}"))
    for preset in store.presets:
        issues.extend(_structural_issues(preset.graph))

    default = store.default_preset
    if default is None:
        issues.append(
            ValidationIssue(
                severity=IssueSeverity.BLOCKING,
                message="defaultPresetId must reference an existing preset",
                suggested_fix="Set defaultPresetId to a valid preset id.",
            )
        )

    checks: dict[str, DeviceCheck] = {}
    if device_exists is not None:
        graph = default.graph if default is not None else StreamingGraphDefinition()
        device_issues, checks = _device_issues(graph, device_exists)
        issues.extend(device_issues)
    return _summarize(issues, checks)


# ── Store ───────────────────────────────────────────────────────


class GraphStoreService:
    """Load and save the streaming graph store file.

    The factory default store is written the first time the file is read.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> StreamingGraphStore:
        async with self._lock:
            if not self._path.is_file():
                store = default_graph_store()
                await self._write(store)
                logger.info("wrote default streaming graph to %s", self._path)
                return store
            async with aiofiles.open(self._path) as f:
                raw = await f.read()
        try:
            return StreamingGraphStore.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ValueError(f"invalid streaming graph store {self._path}: {exc}") from exc

    async def save(self, store: StreamingGraphStore) -> None:
        async with self._lock:
            await self._write(store)

    async def _write(self, store: StreamingGraphStore) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(store.to_entity(), indent=2))
        os.replace(tmp_path, self._path)


def _unreadable_store(path: Path, exc: ValueError) -> ValidationResult:
    issue = ValidationIssue(
        severity=IssueSeverity.BLOCKING,
        message=f"Streaming graph store could not be read: {exc}",
        suggested_fix=f"Fix the JSON in {path} or delete it to restore the default graph.",
    )
    return ValidationResult(status=ValidationStatus.BLOCKING, issues=(issue,), last_run_at=iso_now())


class StreamingGraphValidator:
    """Validate the stored graph and cache the latest result.

    The result is kept in memory and written back into the store file so the
    UI can show it without re-running the checks.
    """

    def __init__(self, store: GraphStoreService, *, device_exists: DeviceExists | None = os.path.exists) -> None:
        self._store = store
        self._device_exists = device_exists
        self._last_result: ValidationResult | None = None

    @property
    def last_result(self) -> ValidationResult | None:
        return self._last_result

    async def validate(self) -> ValidationResult:
        try:
            store = await self._store.load()
        except ValueError as exc:
            logger.error("streaming graph store unreadable: %s", exc)
            self._last_result = _unreadable_store(self._store.path, exc)
            return self._last_result
        result = validate_store(store, device_exists=self._device_exists)
        self._last_result = result
        await self._store.save(store.model_copy(update={"validation": result}))
        if result.is_blocking:
            logger.warning(
                "streaming graph blocking: %s",
                "; ".join(i.message for i in result.issues if i.severity == IssueSeverity.BLOCKING),
            )
        else:
            logger.info("streaming graph validation %s (%d issue(s))", result.status.value, len(result.issues))
        return result
