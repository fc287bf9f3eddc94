"""Rendering of manifest templates into API objects and machine configuration files."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

import jinja2
import yaml

FILES_DIR = "files"
OVS_UNITS_DIR = "ovs-units"
SWITCHDEV_UNITS_DIR = "switchdev-units"
PLATFORM_BASE = "bindata/manifests/machine-config"

MANIFEST_SUFFIXES = (".yml", ".yaml", ".json")


class RenderError(Exception):
    """A manifest could not be read, rendered or decoded."""


@dataclass
class RenderData:
    """Functions and values available to templates."""

    funcs: dict[str, Callable[..., Any]] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeviceInfo:
    """A device and the number of virtual functions it is to have."""

    pci_address: str
    num_vfs: int


def make_render_data() -> RenderData:
    """Return empty render data."""
    return RenderData()


def get_or(mapping: dict[str, Any], key: str, fallback: Any) -> Any:
    """Return ``mapping[key]``, or ``fallback`` when missing or the empty string."""
    if key not in mapping:
        return fallback
    value = mapping[key]
    if isinstance(value, str) and value == "":
        return fallback
    return value


def is_set(mapping: dict[str, Any], key: str) -> Any:
    """Return ``mapping[key]`` when present, even if falsy, else False."""
    return mapping[key] if key in mapping else False


def format_device_list(devices: list[DeviceInfo]) -> str:
    """Format devices as ``<pci address> <num vfs>`` lines."""
    return "".join(f"{dev.pci_address} {dev.num_vfs}\n" for dev in devices)


def _walk(path: str) -> Iterator[tuple[str, os.stat_result]]:
    info = os.lstat(path)
    if stat.S_ISDIR(info.st_mode):
        for name in sorted(os.listdir(path)):
            yield from _walk(os.path.join(path, name))
    else:
        yield path, info


def _render_to_string(path: str, data: RenderData) -> str:
    env = jinja2.Environment(undefined=jinja2.StrictUndefined, keep_trailing_newline=True)
    env.globals.update(data.funcs)
    env.globals.update(getOr=get_or, isSet=is_set)
    try:
        source = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise RenderError(f"failed to read manifest {path}: {exc}") from exc
    try:
        template = env.from_string(source)
    except jinja2.TemplateSyntaxError as exc:
        raise RenderError(f"failed to parse manifest {path} as template: {exc}") from exc
    context = {"data": data.data, **data.data}
    try:
        return template.render(context)
    except (jinja2.TemplateError, TypeError, ValueError, KeyError, AttributeError) as exc:
        raise RenderError(f"failed to render manifest {path}: {exc}") from exc


def render_template(path: str, data: RenderData) -> list[dict[str, Any]]:
    """Render a YAML or JSON template holding one or more API objects.

    Values are top-level template variables; the whole value mapping is
    also available as ``data``.
    """
    rendered = _render_to_string(path, data)
    if not rendered.strip():
        return []
    try:
        documents = list(yaml.safe_load_all(rendered))
    except yaml.YAMLError as exc:
        raise RenderError(f"failed to unmarshal manifest {path}: {exc}") from exc
    objects = []
    for document in documents:
        if document is None:
            continue
        if not isinstance(document, dict) or not document.get("kind"):
            raise RenderError(f"failed to unmarshal manifest {path}: object 'Kind' is missing")
        objects.append(document)
    return objects


def render_dir(manifest_dir: str, data: RenderData) -> list[dict[str, Any]]:
    """Render every manifest below ``manifest_dir``, in lexical path order."""
    objects: list[dict[str, Any]] = []
    try:
        for path, _ in _walk(manifest_dir):
            if path.endswith(MANIFEST_SUFFIXES):
                objects.extend(render_template(path, data))
    except (OSError, RenderError) as exc:
        raise RenderError(f"error rendering manifests: {exc}") from exc
    return objects


def exists_dir(path: str) -> bool:
    """Tell whether ``path`` is a directory; False when missing or not a directory."""
    try:
        info = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise RenderError(f"failed to open dir {path!r}: {exc}") from exc
    return stat.S_ISDIR(info.st_mode)


def filter_templates(path: str, data: RenderData, existing: dict[str, str]) -> dict[str, str]:
    """Render the files below ``path`` into a copy of ``existing``, keyed by file name.

    An empty template removes the entry of the same name.
    """
    result = dict(existing)
    for file_path, info in _walk(path):
        name = os.path.basename(file_path)
        if info.st_size == 0:
            result.pop(name, None)
            continue
        result[name] = _render_to_string(file_path, data)
    return result


def collect_machine_config_templates(
    path: str, ovs_offload: bool, data: RenderData
) -> tuple[list[str], list[str]]:
    """Render the file and unit templates of a machine configuration directory.

    Returns the rendered files and units, each ordered by file name.
    """
    data.funcs["formateDeviceList"] = format_device_list
    if not exists_dir(path):
        raise RenderError(f"{path} is not a directory")

    files: dict[str, str] = {}
    units: dict[str, str] = {}
    files_dir = os.path.join(path, FILES_DIR)
    if exists_dir(files_dir):
        files = filter_templates(files_dir, data, files)
    if ovs_offload:
        ovs_dir = os.path.join(path, OVS_UNITS_DIR)
        if exists_dir(ovs_dir):
            units = filter_templates(ovs_dir, data, units)
    switchdev_dir = os.path.join(path, SWITCHDEV_UNITS_DIR)
    if exists_dir(switchdev_dir):
        units = filter_templates(switchdev_dir, data, units)

    return [files[key] for key in sorted(files)], [units[key] for key in sorted(units)]