from unittest import mock

import pytest
import yaml

from sriovconf.service import (
    Service,
    ServiceManager,
    UnitOption,
    append_to_service,
    compare_services,
    deserialize_unit,
    read_script_manifest_file,
    read_service_injection_manifest_file,
    read_service_manifest_file,
    remove_from_service,
    serialize_unit,
)

UNIT = "[Unit]\nDescription=Example\nAfter=network.target\n\n[Service]\nExecStart=/bin/true\n"


def test_deserialize_unit():
    options = deserialize_unit(UNIT)
    assert options[0] == UnitOption("Unit", "Description", "Example")
    assert [opt.section for opt in options] == ["Unit", "Unit", "Service"]
    assert [opt.name for opt in options] == ["Description", "After", "ExecStart"]


def test_serialize_round_trip():
    assert serialize_unit(deserialize_unit(UNIT)) == UNIT


def test_serialize_groups_sections_in_first_seen_order():
    options = [
        UnitOption("Unit", "A", "1"),
        UnitOption("Service", "B", "2"),
        UnitOption("Unit", "C", "3"),
    ]
    parsed = deserialize_unit(serialize_unit(options))
    assert parsed == [options[0], options[2], options[1]]


def test_serialize_empty():
    assert serialize_unit([]) == ""


def test_deserialize_comments_and_continuation():
    content = "# leading\n[Unit]\n; note\nDescription=long \\\n  text\n"
    assert deserialize_unit(content) == [UnitOption("Unit", "Description", "long text")]


@pytest.mark.parametrize("content", ["Description=x\n", "[Unit]\nbroken\n", "[Unit\nA=b\n", "[Unit]\n=value\n"])
def test_deserialize_errors(content):
    with pytest.raises(ValueError):
        deserialize_unit(content)


def test_unit_option_match():
    option = UnitOption("Unit", "After", "network.target")
    assert option.match(UnitOption("Unit", "After", "network.target"))
    assert not option.match(UnitOption("Service", "After", "network.target"))
    assert not option.match(UnitOption("Unit", "After", "other.target"))


def test_compare_services():
    full = Service("a.service", "/etc/a.service", UNIT)
    subset = Service("a.service", "/etc/a.service", "[Service]\nExecStart=/bin/true\n")
    extra = Service("a.service", "/etc/a.service", "[Service]\nRestart=always\n")
    assert compare_services(full, subset) is False
    assert compare_services(full, extra) is True


def test_remove_from_service():
    service = Service("a.service", "/etc/a.service", UNIT)
    removed = UnitOption("Unit", "After", "network.target")
    result = remove_from_service(service, removed)
    assert (result.name, result.path) == (service.name, service.path)
    options = deserialize_unit(result.content)
    assert not any(opt.match(removed) for opt in options)
    assert len(options) == len(deserialize_unit(UNIT)) - 1


def test_append_to_service():
    service = Service("a.service", "/etc/a.service", UNIT)
    existing = UnitOption("Service", "ExecStart", "/bin/true")
    new = UnitOption("Service", "Restart", "always")
    result = append_to_service(service, existing, new, new)
    options = deserialize_unit(result.content)
    assert len(options) == len(deserialize_unit(UNIT)) + 1
    assert sum(opt.match(new) for opt in options) == 1


def test_read_service_manifest_file(tmp_path):
    path = tmp_path / "unit.yaml"
    path.write_text(yaml.safe_dump({"name": "sw.service", "contents": UNIT}))
    service = read_service_manifest_file(str(path))
    assert service == Service("sw.service", "/etc/systemd/system/sw.service", UNIT)


def test_read_service_injection_manifest_file(tmp_path):
    path = tmp_path / "inject.yaml"
    dropin = "[Service]\nExecStartPre=/bin/true\n"
    path.write_text(yaml.safe_dump({"name": "nm.service", "dropins": [{"contents": dropin}]}))
    service = read_service_injection_manifest_file(str(path))
    assert service == Service("nm.service", "/usr/lib/systemd/system/nm.service", dropin)


def test_read_service_injection_manifest_without_dropins(tmp_path):
    path = tmp_path / "inject.yaml"
    path.write_text(yaml.safe_dump({"name": "nm.service"}))
    with pytest.raises(ValueError):
        read_service_injection_manifest_file(str(path))


def test_read_script_manifest_file(tmp_path):
    path = tmp_path / "script.yaml"
    path.write_text(yaml.safe_dump({"path": "/usr/local/bin/x.sh", "contents": {"inline": "#!/bin/sh\n"}}))
    script = read_script_manifest_file(str(path))
    assert (script.path, script.contents) == ("/usr/local/bin/x.sh", "#!/bin/sh\n")


def test_read_manifest_not_a_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError):
        read_service_manifest_file(str(path))


def test_service_manager_exist_and_read(tmp_path):
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "a.service").write_text(UNIT)
    manager = ServiceManager(str(tmp_path))
    assert manager.is_service_exist("/etc/a.service") is True
    assert manager.is_service_exist("/etc/b.service") is False
    assert manager.read_service("/etc/a.service") == Service("a.service", "/etc/a.service", UNIT)
    with pytest.raises(FileNotFoundError):
        manager.read_service("/etc/b.service")


def test_service_manager_default_root():
    assert ServiceManager("").root == "/"


def test_enable_service(tmp_path):
    (tmp_path / "etc").mkdir()
    manager = ServiceManager(str(tmp_path))
    service = Service("a.service", "/etc/a.service", UNIT)
    with mock.patch("os.chroot") as chroot_mock, mock.patch("os.fchdir") as fchdir_mock, mock.patch(
        "subprocess.run"
    ) as run_mock:
        manager.enable_service(service)
    assert (tmp_path / "etc" / "a.service").read_text() == UNIT
    assert run_mock.call_args == mock.call(["systemctl", "enable", "a.service"], check=True)
    assert chroot_mock.call_args_list == [mock.call(str(tmp_path)), mock.call(".")]
    assert fchdir_mock.call_count == 1