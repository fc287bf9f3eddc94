import pytest

from sriovconf.models import Interface, InterfaceExt, NodeState, NodeStateSpec, NodeStateStatus
from sriovconf.plugins.mellanox_plugin import (
    MellanoxPlugin,
    MlnxNic,
    build_mstconfig_args,
    get_link_type,
    get_pci_address_prefix,
    handle_enable_sriov,
    handle_total_vfs,
    is_link_type_require_change,
    mlnx_nic_from_map,
    parse_mstconfig_output,
)
from sriovconf.validate import SupportedNics

ADDR = "0000:3b:00.0"


def mst_output(default_vfs, current_vfs, next_vfs, cur_sriov="True(1)", next_sriov="True(1)"):
    return "\n".join(
        [
            "Device #1:",
            "----------",
            "Configurations:            Default     Current     Next Boot",
            f"*   {'NUM_OF_VFS':<20} {default_vfs}   {current_vfs}   {next_vfs}",
            f"    {'SRIOV_EN':<20} True(1)   {cur_sriov}   {next_sriov}",
            f"    {'LINK_TYPE_P1':<20} ETH(2)   ETH(2)   ETH(2)",
            "",
        ]
    )


class FakeRunner:
    def __init__(self, output):
        self.output = output
        self.calls = []

    def __call__(self, command, *args):
        self.calls.append((command, *args))
        if args and args[-1] == "q":
            return self.output
        return ""

    @property
    def set_calls(self):
        return [call for call in self.calls if "set" in call]


def make_state(spec_ifaces, status_ifaces):
    return NodeState(
        spec=NodeStateSpec(interfaces=spec_ifaces),
        status=NodeStateStatus(interfaces=status_ifaces),
    )


def mlx_status(address=ADDR, device_id="1017"):
    return InterfaceExt(pci_address=address, vendor="15b3", device_id=device_id, link_type="ETH", name="ens1f0")


def test_parse_mstconfig_output_reads_current_and_next():
    current, following = parse_mstconfig_output(
        mst_output("8", "16", "32"), ["NUM_OF_VFS", "SRIOV_EN", "LINK_TYPE_P2"]
    )
    assert current["NUM_OF_VFS"] == "16"
    assert following["NUM_OF_VFS"] == "32"
    assert current["SRIOV_EN"] == "True(1)"
    assert "LINK_TYPE_P2" not in current and "LINK_TYPE_P2" not in following


def test_parse_mstconfig_output_rejects_malformed_line():
    with pytest.raises(ValueError):
        parse_mstconfig_output("NUM_OF_VFS broken", ["NUM_OF_VFS"])


def test_mlnx_nic_from_map():
    nic = mlnx_nic_from_map({"NUM_OF_VFS": "16", "SRIOV_EN": "True(1)", "LINK_TYPE_P1": "IB(1)"})
    assert nic == MlnxNic(enable_sriov=True, total_vfs=16, link_type_p1="IB", link_type_p2="")


def test_mlnx_nic_from_map_rejects_bad_total():
    with pytest.raises(ValueError):
        mlnx_nic_from_map({"NUM_OF_VFS": "many"})
    with pytest.raises(ValueError):
        mlnx_nic_from_map({})


@pytest.mark.parametrize(
    "raw, expected",
    [("ETH(2)", "ETH"), ("IB(1)", "IB"), ("VPI(3)", "Uknown"), ("", "Preconfigured")],
)
def test_get_link_type(raw, expected):
    assert get_link_type(raw) == expected


def test_get_pci_address_prefix_drops_function_digit():
    assert get_pci_address_prefix(ADDR) == ADDR[:-1]
    assert get_pci_address_prefix("0000:3b:00.1") == get_pci_address_prefix(ADDR)


def test_is_link_type_require_change():
    status = InterfaceExt(pci_address=ADDR, link_type="ETH")
    assert is_link_type_require_change(Interface(pci_address=ADDR, link_type="ib"), status, "ETH")
    assert not is_link_type_require_change(Interface(pci_address=ADDR, link_type="eth"), status, "ETH")
    assert not is_link_type_require_change(Interface(pci_address=ADDR), status, "ETH")


@pytest.mark.parametrize(
    "link_type, fw_link_type",
    [("foo", "ETH"), ("IB", "Uknown"), ("IB", "Preconfigured")],
)
def test_is_link_type_require_change_errors(link_type, fw_link_type):
    status = InterfaceExt(pci_address=ADDR, link_type="ETH")
    with pytest.raises(ValueError):
        is_link_type_require_change(Interface(pci_address=ADDR, link_type=link_type), status, fw_link_type)


def test_handle_total_vfs_uses_larger_port_and_needs_reboot():
    attrs = MlnxNic(total_vfs=-1)
    total, reboot, without = handle_total_vfs(
        MlnxNic(total_vfs=4),
        MlnxNic(total_vfs=4),
        attrs,
        Interface(pci_address=ADDR, num_vfs=4),
        Interface(pci_address="0000:3b:00.1", num_vfs=10),
    )
    assert (total, reboot, without) == (10, True, False)
    assert attrs.total_vfs == 10


def test_handle_total_vfs_next_boot_change_only():
    attrs = MlnxNic(total_vfs=-1)
    result = handle_total_vfs(MlnxNic(total_vfs=8), MlnxNic(total_vfs=0), attrs, Interface(pci_address=ADDR, num_vfs=8))
    assert result == (8, False, True)
    assert attrs.total_vfs == 8


def test_handle_total_vfs_no_change():
    attrs = MlnxNic(total_vfs=-1)
    result = handle_total_vfs(MlnxNic(total_vfs=8), MlnxNic(total_vfs=8), attrs, Interface(pci_address=ADDR, num_vfs=8))
    assert result == (8, False, False)
    assert attrs.total_vfs == -1


def test_handle_enable_sriov_cases():
    attrs = MlnxNic(enable_sriov=True)
    assert handle_enable_sriov(0, MlnxNic(enable_sriov=True), MlnxNic(), attrs) == (True, False)
    assert attrs.enable_sriov is False

    attrs = MlnxNic()
    assert handle_enable_sriov(4, MlnxNic(enable_sriov=False), MlnxNic(), attrs) == (True, False)
    assert attrs.enable_sriov is True

    attrs = MlnxNic()
    assert handle_enable_sriov(4, MlnxNic(enable_sriov=True), MlnxNic(enable_sriov=False), attrs) == (False, True)
    assert attrs.enable_sriov is True

    attrs = MlnxNic()
    assert handle_enable_sriov(4, MlnxNic(enable_sriov=True), MlnxNic(enable_sriov=True), attrs) == (False, False)


def test_build_mstconfig_args():
    args = build_mstconfig_args(ADDR, MlnxNic(enable_sriov=True, total_vfs=8, link_type_p1="IB"))
    assert args == ["-d", ADDR, "-y", "set", "SRIOV_EN=True", "NUM_OF_VFS=8", "LINK_TYPE_P1=IB"]
    assert build_mstconfig_args(ADDR, MlnxNic(total_vfs=0)) == ["-d", ADDR, "-y", "set", "SRIOV_EN=False", "NUM_OF_VFS=0"]
    assert len(build_mstconfig_args(ADDR, MlnxNic(total_vfs=-1))) == 4


def test_plugin_enabling_vfs_needs_reboot_and_applies():
    runner = FakeRunner(mst_output("0", "0", "0", cur_sriov="False(0)", next_sriov="False(0)"))
    plugin = MellanoxPlugin(runner=runner, lockdown=lambda: False)
    state = make_state([Interface(pci_address=ADDR, num_vfs=8)], [mlx_status()])
    assert plugin.on_node_state_add(state) == (True, True)
    assert plugin.attributes_to_change[ADDR] == MlnxNic(enable_sriov=True, total_vfs=8)
    plugin.apply()
    assert runner.set_calls == [("mstconfig", "-d", ADDR, "-y", "set", "SRIOV_EN=True", "NUM_OF_VFS=8")]


def test_plugin_matching_firmware_changes_nothing():
    runner = FakeRunner(mst_output("8", "8", "8"))
    plugin = MellanoxPlugin(runner=runner, lockdown=lambda: False)
    state = make_state([Interface(pci_address=ADDR, num_vfs=8)], [mlx_status()])
    assert plugin.on_node_state_change(None, state) == (False, False)
    assert plugin.attributes_to_change == {}
    plugin.apply()
    assert runner.set_calls == []


def test_plugin_resets_nic_without_spec():
    runner = FakeRunner(mst_output("0", "8", "8"))
    plugin = MellanoxPlugin(runner=runner, lockdown=lambda: False)
    state = make_state([], [mlx_status()])
    assert plugin.on_node_state_change(None, state) == (False, False)
    assert plugin.attributes_to_change == {ADDR: MlnxNic(total_vfs=0)}
    plugin.apply()
    assert runner.set_calls == [("mstconfig", "-d", ADDR, "-y", "set", "SRIOV_EN=False", "NUM_OF_VFS=0")]


def test_plugin_skips_unsupported_nic_without_spec():
    runner = FakeRunner(mst_output("0", "8", "8"))
    plugin = MellanoxPlugin(runner=runner, lockdown=lambda: False, nics=SupportedNics(["15b3 1015 1016"]))
    state = make_state([], [mlx_status(device_id="1017")])
    assert plugin.on_node_state_change(None, state) == (False, False)
    assert plugin.attributes_to_change == {}
    assert runner.calls == []


def test_plugin_ignores_other_vendors():
    runner = FakeRunner(mst_output("0", "0", "0"))
    plugin = MellanoxPlugin(runner=runner, lockdown=lambda: False)
    intel = InterfaceExt(pci_address=ADDR, vendor="8086", device_id="158b")
    state = make_state([Interface(pci_address=ADDR, num_vfs=8)], [intel])
    assert plugin.on_node_state_change(None, state) == (False, False)
    assert runner.calls == []


def test_plugin_lockdown_with_mellanox_spec_raises():
    runner = FakeRunner(mst_output("0", "0", "0"))
    plugin = MellanoxPlugin(runner=runner, lockdown=lambda: True)
    state = make_state([Interface(pci_address=ADDR, num_vfs=8)], [mlx_status()])
    with pytest.raises(RuntimeError, match="lockdown"):
        plugin.on_node_state_change(None, state)


def test_plugin_lockdown_without_spec_skips_and_apply_does_nothing():
    runner = FakeRunner(mst_output("0", "8", "8"))
    plugin = MellanoxPlugin(runner=runner, lockdown=lambda: True)
    state = make_state([], [mlx_status()])
    assert plugin.on_node_state_change(None, state) == (False, False)
    plugin.attributes_to_change = {ADDR: MlnxNic(total_vfs=0)}
    plugin.apply()
    assert runner.calls == []


def test_plugin_link_type_change_needs_reboot():
    runner = FakeRunner(mst_output("8", "8", "8"))
    plugin = MellanoxPlugin(runner=runner, lockdown=lambda: False)
    state = make_state([Interface(pci_address=ADDR, num_vfs=8, link_type="IB")], [mlx_status()])
    assert plugin.on_node_state_change(None, state) == (True, True)
    assert plugin.attributes_to_change[ADDR].link_type_p1 == "IB"


def test_plugin_identity():
    plugin = MellanoxPlugin(runner=FakeRunner(""), lockdown=lambda: False)
    assert plugin.name == "mellanox_plugin"
    assert plugin.spec_version == "1.0"