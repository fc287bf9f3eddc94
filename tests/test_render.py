import json

import pytest

from sriovconf.render import (
    DeviceInfo,
    RenderError,
    collect_machine_config_templates,
    exists_dir,
    filter_templates,
    format_device_list,
    get_or,
    is_set,
    make_render_data,
    render_dir,
    render_template,
)

SIMPLE_YAML = """apiVersion: v1
kind: Pod
metadata:
  name: busybox1
  namespace: ns
spec:
  containers:
  - image: busybox
"""

SIMPLE_JSON = {
    "apiVersion": "v1",
    "kind": "Pod",
    "metadata": {"name": "busybox1", "namespace": "ns"},
    "spec": {"containers": [{"image": "busybox"}]},
}

MULTIPLE_YAML = """apiVersion: v1
kind: Pod
metadata:
  name: busybox1
---
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRoleBinding
metadata:
  name: binding
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: config
"""

TEMPLATE_YAML = """apiVersion: v1
kind: Pod
metadata:
  name: {{ fname("podname") }}
  namespace: {{ Namespace }}
foo: {{ getOr(data, "Foo", "fallback") }}
bar: {{ getOr(data, "Namespace", "fallback") }}
"""


@pytest.fixture
def manifests(tmp_path):
    root = tmp_path / "manifests"
    root.mkdir()
    (root / "simple.yaml").write_text(SIMPLE_YAML)
    (root / "simple.json").write_text(json.dumps(SIMPLE_JSON))
    (root / "multiple.yaml").write_text(MULTIPLE_YAML)
    (root / "template.yaml").write_text(TEMPLATE_YAML)
    (root / "README.txt").write_text("not a manifest")
    return root


def test_render_simple(manifests):
    data = make_render_data()
    objects = render_template(str(manifests / "simple.yaml"), data)
    assert len(objects) == 1
    assert objects[0] == SIMPLE_JSON
    assert render_template(str(manifests / "simple.json"), data) == objects


def test_render_multiple(manifests):
    objects = render_template(str(manifests / "multiple.yaml"), make_render_data())
    assert len(objects) == 3
    assert [(o["apiVersion"], o["kind"]) for o in objects] == [
        ("v1", "Pod"),
        ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding"),
        ("v1", "ConfigMap"),
    ]


def test_template(manifests):
    path = str(manifests / "template.yaml")
    data = make_render_data()
    with pytest.raises(RenderError) as missing_func:
        render_template(path, data)
    assert str(missing_func.value).endswith("'fname' is undefined")

    data.funcs["fname"] = lambda s: "test-" + s
    with pytest.raises(RenderError) as missing_key:
        render_template(path, data)
    assert str(missing_key.value).endswith("'Namespace' is undefined")

    data.data["Namespace"] = "myns"
    objects = render_template(path, data)
    assert objects[0]["metadata"]["name"] == "test-podname"
    assert objects[0]["metadata"]["namespace"] == "myns"
    assert objects[0]["foo"] == "fallback"
    assert objects[0]["bar"] == "myns"


def test_render_dir(manifests):
    data = make_render_data()
    data.funcs["fname"] = lambda s: s
    data.data["Namespace"] = "myns"
    assert len(render_dir(str(manifests), data)) == 6


def test_render_dir_missing(tmp_path):
    with pytest.raises(RenderError):
        render_dir(str(tmp_path / "absent"), make_render_data())


def test_render_whitespace_only(tmp_path):
    path = tmp_path / "blank.yaml"
    path.write_text("  \n\n")
    assert render_template(str(path), make_render_data()) == []


def test_render_object_without_kind(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("apiVersion: v1\nmetadata:\n  name: x\n")
    with pytest.raises(RenderError, match="failed to unmarshal manifest"):
        render_template(str(path), make_render_data())


def test_render_syntax_error(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("kind: {{ unclosed\n")
    with pytest.raises(RenderError, match="as template"):
        render_template(str(path), make_render_data())


def test_get_or_and_is_set():
    mapping = {"a": "", "b": "value", "c": 0}
    assert get_or(mapping, "a", "fb") == "fb"
    assert get_or(mapping, "b", "fb") == "value"
    assert get_or(mapping, "missing", "fb") == "fb"
    assert get_or(mapping, "c", "fb") == 0
    assert is_set(mapping, "c") == 0
    assert is_set(mapping, "a") == ""
    assert is_set(mapping, "missing") is False


def test_format_device_list():
    devices = [DeviceInfo("0000:00:01.0", 2), DeviceInfo("0000:00:02.0", 8)]
    assert format_device_list(devices) == "0000:00:01.0 2\n0000:00:02.0 8\n"
    assert format_device_list([]) == ""


def test_exists_dir(tmp_path):
    file_path = tmp_path / "file"
    file_path.write_text("x")
    assert exists_dir(str(tmp_path)) is True
    assert exists_dir(str(file_path)) is False
    assert exists_dir(str(tmp_path / "absent")) is False


def test_filter_templates_empty_file_removes(tmp_path):
    (tmp_path / "keep.conf").write_text("value {{ Namespace }}\n")
    (tmp_path / "drop.conf").write_text("")
    data = make_render_data()
    data.data["Namespace"] = "myns"
    result = filter_templates(str(tmp_path), data, {"drop.conf": "old", "other.conf": "kept"})
    assert result == {"keep.conf": "value myns\n", "other.conf": "kept"}


@pytest.fixture
def machine_config(tmp_path):
    root = tmp_path / "mc"
    (root / "files").mkdir(parents=True)
    (root / "ovs-units").mkdir()
    (root / "switchdev-units").mkdir()
    (root / "files" / "b.conf").write_text("{{ formateDeviceList(devices) }}")
    (root / "files" / "a.conf").write_text("first")
    (root / "ovs-units" / "ovs.yaml").write_text("ovs")
    (root / "switchdev-units" / "sw.yaml").write_text("switchdev")
    return root


def test_collect_machine_config_templates(machine_config):
    data = make_render_data()
    data.data["devices"] = [DeviceInfo("0000:00:01.0", 2)]
    files, units = collect_machine_config_templates(str(machine_config), False, data)
    assert files == ["first", "0000:00:01.0 2\n"]
    assert units == ["switchdev"]
    _, units_with_ovs = collect_machine_config_templates(str(machine_config), True, data)
    assert units_with_ovs == ["ovs", "switchdev"]


def test_collect_machine_config_templates_not_a_directory(tmp_path):
    with pytest.raises(RenderError, match="is not a directory"):
        collect_machine_config_templates(str(tmp_path / "absent"), False, make_render_data())