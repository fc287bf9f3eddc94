"""Discovery and configuration of SR-IOV devices on a bare-metal node."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from typing import Callable, TypeVar

from sriovconf.models import (
    ESWITCH_MODE_SWITCHDEV,
    Interface,
    InterfaceExt,
    NodeState,
    VirtualFunction,
    index_in_range,
)
from sriovconf.sysfs import (
    DPDK_DRIVERS,
    NET_CLASS,
    VENDOR_MELLANOX,
    PciDevice,
    Sysfs,
    generate_random_guid,
    is_kernel_lockdown_mode,
    run_command,
)

log = logging.getLogger(__name__)

CLUSTER_TYPE_OPENSHIFT = "openshift"
CLUSTER_TYPE_KUBERNETES = "kubernetes"
DEFAULT_ETH_MTU = 1500
DEFAULT_IB_MTU = 2048

_MAX_RETRIES = 10
_VF_READY_ATTEMPTS = 6

_T = TypeVar("_T")


def _retry(interval: float, action: Callable[[], _T]) -> _T:
    last_error: OSError | None = None
    for attempt in range(_MAX_RETRIES + 1):
        try:
            return action()
        except OSError as exc:
            last_error = exc
            if attempt < _MAX_RETRIES:
                time.sleep(interval)
    assert last_error is not None
    raise last_error


def _nic_sriov_mode(pci_address: str) -> str:
    out = run_command("devlink", "dev", "eswitch", "show", f"pci/{pci_address}")
    fields = out.split()
    if "mode" in fields:
        position = fields.index("mode")
        if position + 1 < len(fields):
            return fields[position + 1]
    return ""


def _vf_info(pci_address: str, devices: list[PciDevice], sysfs: Sysfs) -> VirtualFunction:
    try:
        driver = sysfs.driver_name(pci_address)
    except OSError as exc:
        log.warning("unable to get driver of device %s: %s", pci_address, exc)
        driver = ""
    try:
        vf_id = sysfs.vf_id(pci_address)
    except (OSError, LookupError) as exc:
        log.warning("unable to get VF index of device %s: %s", pci_address, exc)
        vf_id = -1
    vf = VirtualFunction(pci_address=pci_address, driver=driver, vf_id=vf_id)

    mtu = sysfs.netdev_mtu(pci_address)
    if mtu > 0:
        vf.mtu = mtu
    name = sysfs.try_get_interface_name(pci_address)
    if name:
        vf.name = name
        vf.mac = sysfs.net_dev_mac(name)

    device = next((dev for dev in devices if dev.address == pci_address), None)
    if device is not None:
        vf.vendor = device.vendor_id
        vf.device_id = device.product_id
    return vf


def discover_sriov_devices(sysfs: Sysfs) -> list[InterfaceExt]:
    """Return the observed state of every network physical function."""
    devices = sysfs.list_pci_devices()
    if not devices:
        raise RuntimeError("could not retrieve PCI devices")

    found: list[InterfaceExt] = []
    for device in devices:
        try:
            device_class = int(device.class_id, 16)
        except ValueError:
            log.warning("unable to parse device class for device %s", device.address)
            continue
        if device_class != NET_CLASS:
            continue
        if sysfs.is_sriov_vf(device.address):
            continue
        try:
            driver = sysfs.driver_name(device.address)
        except OSError as exc:
            log.warning("unable to get driver of device %s: %s", device.address, exc)
            continue
        try:
            names = sysfs.net_names(device.address)
        except OSError as exc:
            log.warning("unable to get interface names of device %s: %s", device.address, exc)
            continue
        if not names:
            continue

        iface = InterfaceExt(
            pci_address=device.address,
            driver=driver,
            vendor=device.vendor_id,
            device_id=device.product_id,
        )
        mtu = sysfs.netdev_mtu(device.address)
        if mtu > 0:
            iface.mtu = mtu
        name = sysfs.try_get_interface_name(device.address)
        if name:
            iface.name = name
            iface.mac = sysfs.net_dev_mac(name)
            iface.link_speed = sysfs.net_dev_link_speed(name)
        iface.link_type = sysfs.link_type(iface.name)

        if sysfs.is_sriov_pf(device.address):
            iface.total_vfs = sysfs.total_vfs(device.address)
            iface.num_vfs = sysfs.configured_vfs(device.address)
            try:
                iface.eswitch_mode = _nic_sriov_mode(device.address)
            except (OSError, subprocess.CalledProcessError) as exc:
                log.warning("unable to get e-switch mode of device %s: %s", device.address, exc)
            if iface.num_vfs > 0:
                try:
                    vf_addresses = sysfs.vf_list(device.address)
                except OSError as exc:
                    log.warning("unable to list VFs of device %s: %s", device.address, exc)
                    continue
                iface.vfs = [_vf_info(vf, devices, sysfs) for vf in vf_addresses]
        found.append(iface)
    return found


def has_mellanox_interfaces_in_spec(state: NodeState) -> bool:
    """Tell whether a Mellanox interface of the node is in the desired state."""
    desired = {iface.pci_address for iface in state.spec.interfaces}
    return any(
        status.vendor == VENDOR_MELLANOX and status.pci_address in desired
        for status in state.status.interfaces
    )


def sync_node_state(
    state: NodeState,
    sysfs: Sysfs,
    initial_state: NodeState | None = None,
    cluster_type: str | None = None,
) -> None:
    """Bring the node's devices in line with the desired state."""
    if cluster_type is None:
        cluster_type = os.environ.get("CLUSTER_TYPE", "")
    if has_mellanox_interfaces_in_spec(state) and is_kernel_lockdown_mode(True):
        log.warning("cannot use mellanox devices when in kernel lockdown mode")
        raise RuntimeError("cannot use mellanox devices when in kernel lockdown mode")

    for status in state.status.interfaces:
        iface = next(
            (i for i in state.spec.interfaces if i.pci_address == status.pci_address), None
        )
        if iface is not None:
            if iface.eswitch_mode == ESWITCH_MODE_SWITCHDEV and cluster_type == CLUSTER_TYPE_OPENSHIFT:
                # The machine configuration sets up switchdev devices on this platform.
                continue
            if not need_update(iface, status):
                log.debug("no need to update interface %s", iface.pci_address)
                continue
            config_sriov_device(iface, status, sysfs)
        elif status.num_vfs > 0 and status.eswitch_mode != ESWITCH_MODE_SWITCHDEV:
            reset_sriov_device(status, sysfs, initial_state)


def need_update(iface: Interface, iface_status: InterfaceExt) -> bool:
    """Tell whether the observed interface differs from the desired one."""
    if iface.mtu > 0 and iface.mtu != iface_status.mtu:
        log.debug("MTU needs update, desired=%d, current=%d", iface.mtu, iface_status.mtu)
        return True
    if iface.num_vfs != iface_status.num_vfs:
        log.debug("NumVfs needs update, desired=%d, current=%d", iface.num_vfs, iface_status.num_vfs)
        return True
    if iface.num_vfs > 0:
        for vf in iface_status.vfs:
            group = next(
                (g for g in iface.vf_groups if index_in_range(vf.vf_id, g.vf_range)), None
            )
            if group is None:
                if vf.driver in DPDK_DRIVERS:
                    return True
                continue
            if group.device_type != "netdevice":
                if group.device_type != vf.driver:
                    log.debug("driver needs update, desired=%s, current=%s", group.device_type, vf.driver)
                    return True
            else:
                if vf.driver in DPDK_DRIVERS:
                    log.debug("driver needs update, desired=%s, current=%s", group.device_type, vf.driver)
                    return True
                if vf.mtu != 0 and vf.mtu != group.mtu:
                    log.debug("VF %d MTU needs update, desired=%d", vf.vf_id, group.mtu)
                    return True
    return False


def _config_vf(iface: Interface, address: str, sysfs: Sysfs) -> None:
    try:
        vf_id = sysfs.vf_id(address)
    except (OSError, LookupError) as exc:
        log.warning("unable to get VF id of %s: %s", address, exc)
        vf_id = -1

    driver = ""
    group = None
    # When no group matches, the last group is kept, as its MTU still applies.
    for group in iface.vf_groups:
        if index_in_range(vf_id, group.vf_range):
            if group.device_type in DPDK_DRIVERS:
                driver = group.device_type
            break

    if driver:
        sysfs.bind_dpdk_driver(address, driver)
        return

    sysfs.bind_default_driver(address)
    try:
        _retry(sysfs.retry_interval, lambda: sysfs.net_names(address))
    except OSError as exc:
        log.warning("unbinding %s from default driver after error: %s", address, exc)
        try:
            sysfs.unbind(address)
        except OSError as unbind_exc:
            raise RuntimeError(f"failed to unbind PCI {address}: {unbind_exc}") from unbind_exc
        sysfs.bind_default_driver(address)
        log.warning("rebound PCI %s to its default driver", address)

    if group is not None and group.mtu > 0:
        sysfs.set_netdev_mtu(address, group.mtu)


def config_sriov_device(iface: Interface, iface_status: InterfaceExt, sysfs: Sysfs) -> None:
    """Configure a physical function and its virtual functions as desired."""
    log.debug("configuring interface %s", iface.pci_address)
    if iface.num_vfs > iface_status.total_vfs:
        raise ValueError("cannot config SRIOV device: NumVfs is larger than TotalVfs")

    if iface.num_vfs != iface_status.num_vfs:
        sysfs.set_sriov_num_vfs(iface.pci_address, iface.num_vfs)
        if iface.link_type.lower() == "ib":
            set_vfs_guid(iface, sysfs)
        else:
            set_vfs_admin_mac(iface_status, sysfs)

    if iface.mtu > 0 and iface.mtu != iface_status.mtu:
        sysfs.set_netdev_mtu(iface.pci_address, iface.mtu)

    if iface.num_vfs > 0:
        try:
            vf_addresses = sysfs.vf_list(iface.pci_address)
        except OSError as exc:
            log.warning("unable to list VFs of device %s: %s", iface.pci_address, exc)
            vf_addresses = []
        for address in vf_addresses:
            _config_vf(iface, address, sysfs)

    set_link_up(iface_status.name)


def reset_sriov_device(
    iface_status: InterfaceExt, sysfs: Sysfs, initial_state: NodeState | None = None
) -> None:
    """Remove the virtual functions of a device and restore its MTU."""
    log.debug("resetting SR-IOV device %s", iface_status.pci_address)
    sysfs.set_sriov_num_vfs(iface_status.pci_address, 0)
    if iface_status.link_type == "ETH":
        initial = (
            initial_state.interface_state_by_pci_address(iface_status.pci_address)
            if initial_state is not None
            else None
        )
        mtu = initial.mtu if initial is not None else DEFAULT_ETH_MTU
        log.debug("resetting mtu to %d", mtu)
        sysfs.set_netdev_mtu(iface_status.pci_address, mtu)
    elif iface_status.link_type == "IB":
        sysfs.set_netdev_mtu(iface_status.pci_address, DEFAULT_IB_MTU)


def set_link_up(name: str) -> None:
    """Bring a network link up."""
    run_command("ip", "link", "set", "dev", name, "up")


def _wait_vf_mac(address: str, sysfs: Sysfs) -> str:
    for attempt in range(_VF_READY_ATTEMPTS):
        name = sysfs.try_get_interface_name(address)
        mac = sysfs.net_dev_mac(name) if name else ""
        if mac:
            return mac
        log.error("VF link of device %s is not ready", address)
        if attempt + 1 < _VF_READY_ATTEMPTS:
            time.sleep(sysfs.retry_interval)
    raise TimeoutError(f"VF link of device {address} is not ready")


def set_vfs_admin_mac(iface_status: InterfaceExt, sysfs: Sysfs) -> None:
    """Set each VF's administrative MAC to its current hardware address."""
    log.info("setting VF admin MACs of device %s", iface_status.pci_address)
    for address in sysfs.vf_list(iface_status.pci_address):
        vf_id = sysfs.vf_id(address)
        mac = _wait_vf_mac(address, sysfs)
        run_command("ip", "link", "set", "dev", iface_status.name, "vf", str(vf_id), "mac", mac)
        sysfs.unbind(address)
        sysfs.bind_default_driver(address)


def set_vfs_guid(iface: Interface, sysfs: Sysfs) -> None:
    """Give each InfiniBand VF a random node and port GUID."""
    log.info("setting VF GUIDs of device %s", iface.pci_address)
    for address in sysfs.vf_list(iface.pci_address):
        vf_id = sysfs.vf_id(address)
        guid = ":".join(f"{byte:02x}" for byte in generate_random_guid())
        run_command("ip", "link", "set", "dev", iface.name, "vf", str(vf_id), "node_guid", guid)
        run_command("ip", "link", "set", "dev", iface.name, "vf", str(vf_id), "port_guid", guid)
        sysfs.unbind(address)
        sysfs.bind_default_driver(address)