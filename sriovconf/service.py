"""Systemd services: unit file editing, manifest reading and enabling."""

from __future__ import annotations

import os
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

import yaml

SYSTEMD_DIR = "/usr/lib/systemd/system/"
SYSTEMD_ETC_DIR = "/etc/systemd/system/"

_COMMENT_PREFIXES = ("#", ";")


@dataclass
class Service:
    """A systemd unit: its name, its path and its file content."""

    name: str
    path: str
    content: str


@dataclass(frozen=True)
class UnitOption:
    """One ``Name=Value`` line in a section of a unit file."""

    section: str
    name: str
    value: str

    def match(self, other: UnitOption) -> bool:
        """Tell whether both options have the same section, name and value."""
        return (self.section, self.name, self.value) == (other.section, other.name, other.value)


@dataclass
class ServiceInjectionManifestFile:
    """A manifest that injects drop-ins into an existing service."""

    name: str
    dropins: list[str] = field(default_factory=list)


@dataclass
class ServiceManifestFile:
    """A manifest holding a whole service unit."""

    name: str
    contents: str


@dataclass
class ScriptManifestFile:
    """A manifest holding a script and the path it is installed at."""

    path: str
    contents: str


def _logical_lines(content: str) -> Iterator[str]:
    pending: list[str] = []
    for raw in content.splitlines():
        line = raw.strip()
        if line.endswith("\\"):
            pending.append(line[:-1].rstrip())
            continue
        if pending:
            yield " ".join(part for part in [*pending, line] if part)
            pending = []
        else:
            yield line
    if pending:
        yield " ".join(part for part in pending if part)


def deserialize_unit(content: str) -> list[UnitOption]:
    """Parse unit file text into its options, in file order."""
    options: list[UnitOption] = []
    section: str | None = None
    for line in _logical_lines(content):
        if not line or line.startswith(_COMMENT_PREFIXES):
            continue
        if line.startswith("["):
            if not line.endswith("]"):
                raise ValueError(f"invalid section header: {line!r}")
            section = line[1:-1].strip()
            if not section:
                raise ValueError("empty section name")
            continue
        if section is None:
            raise ValueError(f"found property before section: {line!r}")
        name, sep, value = line.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"invalid property line: {line!r}")
        options.append(UnitOption(section, name, value.strip()))
    return options


def serialize_unit(options: list[UnitOption]) -> str:
    """Render options as unit file text, grouped by section in first-seen order."""
    sections: dict[str, list[UnitOption]] = {}
    for option in options:
        sections.setdefault(option.section, []).append(option)
    blocks = [
        f"[{section}]\n" + "".join(f"{opt.name}={opt.value}\n" for opt in opts)
        for section, opts in sections.items()
    ]
    return "\n".join(blocks)


def compare_services(service_a: Service, service_b: Service) -> bool:
    """Return True when ``service_b`` holds an option that ``service_a`` lacks."""
    options_a = deserialize_unit(service_a.content)
    options_b = deserialize_unit(service_b.content)
    return any(not any(opt_a.match(opt_b) for opt_a in options_a) for opt_b in options_b)


def remove_from_service(service: Service, *options: UnitOption) -> Service:
    """Return a copy of ``service`` without the given options."""
    kept = [
        opt
        for opt in deserialize_unit(service.content)
        if not any(opt.match(removed) for removed in options)
    ]
    return Service(service.name, service.path, serialize_unit(kept))


def append_to_service(service: Service, *options: UnitOption) -> Service:
    """Return a copy of ``service`` with the given options added where missing."""
    result = deserialize_unit(service.content)
    for extra in options:
        if not any(opt.match(extra) for opt in result):
            result.append(extra)
    return Service(service.name, service.path, serialize_unit(result))


def _load_yaml_mapping(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as handle:
        document = yaml.safe_load(handle)
    if not isinstance(document, dict):
        raise ValueError(f"manifest {path} does not hold a mapping")
    return document


def read_service_injection_manifest_file(path: str) -> Service:
    """Read a drop-in injection manifest; the service takes its first drop-in."""
    document = _load_yaml_mapping(path)
    manifest = ServiceInjectionManifestFile(
        name=str(document.get("name") or ""),
        dropins=[str((entry or {}).get("contents") or "") for entry in document.get("dropins") or []],
    )
    if not manifest.dropins:
        raise ValueError(f"manifest {path} has no drop-ins")
    return Service(manifest.name, SYSTEMD_DIR + manifest.name, manifest.dropins[0])


def read_service_manifest_file(path: str) -> Service:
    """Read a service manifest; the unit goes under /etc/systemd/system."""
    document = _load_yaml_mapping(path)
    manifest = ServiceManifestFile(
        name=str(document.get("name") or ""),
        contents=str(document.get("contents") or ""),
    )
    return Service(manifest.name, SYSTEMD_ETC_DIR + manifest.name, manifest.contents)


def read_script_manifest_file(path: str) -> ScriptManifestFile:
    """Read a script manifest."""
    document = _load_yaml_mapping(path)
    contents = document.get("contents") or {}
    if not isinstance(contents, dict):
        raise ValueError(f"manifest {path} has malformed contents")
    return ScriptManifestFile(
        path=str(document.get("path") or ""),
        contents=str(contents.get("inline") or ""),
    )


@contextmanager
def chroot(path: str) -> Iterator[None]:
    """Change the root directory to ``path`` for the duration of the block."""
    root_fd = os.open("/", os.O_RDONLY)
    try:
        os.chroot(path)
    except OSError:
        os.close(root_fd)
        raise
    try:
        yield
    finally:
        try:
            os.fchdir(root_fd)
            os.chroot(".")
        finally:
            os.close(root_fd)


class ServiceManager:
    """Reads and enables systemd services below a root directory."""

    def __init__(self, root: str) -> None:
        self.root = root or "/"

    def _host_path(self, service_path: str) -> str:
        return os.path.join(self.root, service_path.lstrip("/"))

    def is_service_exist(self, service_path: str) -> bool:
        """Tell whether a unit file exists at ``service_path``."""
        try:
            os.stat(self._host_path(service_path))
        except FileNotFoundError:
            return False
        return True

    def read_service(self, service_path: str) -> Service:
        """Read the unit file at ``service_path``."""
        with open(self._host_path(service_path), encoding="utf-8") as handle:
            content = handle.read()
        return Service(os.path.basename(service_path), service_path, content)

    def enable_service(self, service: Service) -> None:
        """Write the unit file and enable it with systemctl inside the root."""
        fd = os.open(self._host_path(service.path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(service.content)
        with chroot(self.root):
            subprocess.run(["systemctl", "enable", service.name], check=True)