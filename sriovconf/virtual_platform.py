"""Discovery and configuration of SR-IOV devices on virtual platforms."""

from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from sriovconf.models import Interface, InterfaceExt, NodeState, VirtualFunction, index_in_range
from sriovconf.sysfs import DPDK_DRIVERS, NET_CLASS, Sysfs

log = logging.getLogger(__name__)

OSP_METADATA_DIR = "/host/var/config/openstack/latest/"
OSP_NETWORK_DATA_FILE = "network_data.json"
OSP_META_DATA_FILE = "meta_data.json"
OPENSTACK_NETWORK_ID = "openstack/NetworkID"


class PlatformType(enum.Enum):
    """The kind of platform the node runs on."""

    BAREMETAL = 0
    VIRTUAL_OPENSTACK = 1

    def __str__(self) -> str:
        if self is PlatformType.BAREMETAL:
            return "Baremetal"
        return "Virtual/Openstack"


@dataclass
class OSPMetaDataDevice:
    """A device entry of the OpenStack instance metadata."""

    vlan: int = 0
    vf_trusted: bool = False
    type: str = ""
    mac: str = ""
    bus: str = ""
    address: str = ""
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OSPMetaDataDevice:
        return cls(
            vlan=int(raw.get("vlan") or 0),
            vf_trusted=bool(raw.get("vf_trusted") or False),
            type=str(raw.get("type") or ""),
            mac=str(raw.get("mac") or ""),
            bus=str(raw.get("bus") or ""),
            address=str(raw.get("address") or ""),
            tags=[str(tag) for tag in raw.get("tags") or []],
        )


@dataclass
class OSPMetaData:
    """The OpenStack instance metadata document."""

    uuid: str = ""
    admin_pass: str = ""
    name: str = ""
    launch_index: int = 0
    availability_zone: str = ""
    project_id: str = ""
    devices: list[OSPMetaDataDevice] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OSPMetaData:
        return cls(
            uuid=str(raw.get("uuid") or ""),
            admin_pass=str(raw.get("admin_pass") or ""),
            name=str(raw.get("name") or ""),
            launch_index=int(raw.get("launch_index") or 0),
            availability_zone=str(raw.get("availability_zone") or ""),
            project_id=str(raw.get("project_id") or ""),
            devices=[OSPMetaDataDevice.from_dict(dev) for dev in raw.get("devices") or []],
        )


@dataclass
class OSPNetworkLink:
    """A link entry of the OpenStack network data."""

    id: str = ""
    vif_id: str = ""
    type: str = ""
    mtu: int = 0
    ethernet_mac: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OSPNetworkLink:
        return cls(
            id=str(raw.get("id") or ""),
            vif_id=str(raw.get("vif_id") or ""),
            type=str(raw.get("type") or ""),
            mtu=int(raw.get("mtu") or 0),
            ethernet_mac=str(raw.get("ethernet_mac_address") or ""),
        )


@dataclass
class OSPNetwork:
    """A network entry of the OpenStack network data."""

    id: str = ""
    type: str = ""
    link: str = ""
    network_id: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OSPNetwork:
        return cls(
            id=str(raw.get("id") or ""),
            type=str(raw.get("type") or ""),
            link=str(raw.get("link") or ""),
            network_id=str(raw.get("network_id") or ""),
        )


@dataclass
class OSPNetworkData:
    """The OpenStack network data document; services are ignored."""

    links: list[OSPNetworkLink] = field(default_factory=list)
    networks: list[OSPNetwork] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OSPNetworkData:
        return cls(
            links=[OSPNetworkLink.from_dict(link) for link in raw.get("links") or []],
            networks=[OSPNetwork.from_dict(net) for net in raw.get("networks") or []],
        )


def _load_json_mapping(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as handle:
        document = json.load(handle)
    if not isinstance(document, dict):
        raise ValueError(f"{path} does not hold a JSON object")
    return document


def read_openstack_meta_data(
    directory: str = OSP_METADATA_DIR,
) -> tuple[OSPMetaData | None, OSPNetworkData]:
    """Read the OpenStack metadata and network data found in ``directory``.

    Errors are logged. When the network data cannot be read the metadata is
    None; when only the metadata cannot be read it is empty.
    """
    network_path = os.path.join(directory, OSP_NETWORK_DATA_FILE)
    try:
        network_data = OSPNetworkData.from_dict(_load_json_mapping(network_path))
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        log.error("error reading %s: %s", network_path, exc)
        return None, OSPNetworkData()

    meta_path = os.path.join(directory, OSP_META_DATA_FILE)
    try:
        meta_data = OSPMetaData.from_dict(_load_json_mapping(meta_path))
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        log.error("error reading %s: %s", meta_path, exc)
        return OSPMetaData(), network_data
    return meta_data, network_data


def parse_openstack_meta_data(
    pci_address: str,
    meta_data: OSPMetaData | None,
    network_data: OSPNetworkData | None,
) -> tuple[str, str]:
    """Return the network filter and MAC address of the device at ``pci_address``.

    Both are empty when the device is not described by the metadata.
    """
    network_id = ""
    mac_address = ""
    if meta_data is None or network_data is None:
        return network_id, mac_address
    for device in meta_data.devices:
        if device.address != pci_address:
            continue
        for link in network_data.links:
            if device.mac != link.ethernet_mac:
                continue
            for network in network_data.networks:
                if network.link == link.id:
                    network_id = f"{OPENSTACK_NETWORK_ID}:{network.network_id}"
                    mac_address = device.mac
    return network_id, mac_address


def discover_sriov_devices_virtual(
    platform_type: PlatformType,
    sysfs: Sysfs,
    metadata_dir: str = OSP_METADATA_DIR,
) -> list[InterfaceExt]:
    """Return every network device of a virtual node, each as its own single VF."""
    devices = sysfs.list_pci_devices()
    if not devices:
        raise RuntimeError("could not retrieve PCI devices")

    meta_data: OSPMetaData | None = None
    network_data: OSPNetworkData | None = None
    if platform_type is PlatformType.VIRTUAL_OPENSTACK:
        meta_data, network_data = read_openstack_meta_data(metadata_dir)
    else:
        log.debug("unknown platform type: %s", platform_type)

    found: list[InterfaceExt] = []
    for device in devices:
        try:
            device_class = int(device.class_id, 16)
        except ValueError:
            log.warning("unable to parse device class for device %s", device.address)
            continue
        if device_class != NET_CLASS:
            continue

        net_filter, meta_mac = parse_openstack_meta_data(device.address, meta_data, network_data)

        try:
            driver = sysfs.driver_name(device.address)
        except OSError as exc:
            log.warning("unable to get driver of device %s: %s", device.address, exc)
            continue

        iface = InterfaceExt(
            pci_address=device.address,
            driver=driver,
            vendor=device.vendor_id,
            device_id=device.product_id,
            net_filter=net_filter,
        )
        mtu = sysfs.netdev_mtu(device.address)
        if mtu > 0:
            iface.mtu = mtu
        name = sysfs.try_get_interface_name(device.address)
        if name:
            iface.name = name
            iface.mac = sysfs.net_dev_mac(name) or meta_mac
            iface.link_speed = sysfs.net_dev_link_speed(name)
        iface.link_type = sysfs.link_type(iface.name)

        iface.total_vfs = 1
        iface.num_vfs = 1
        iface.vfs.append(
            VirtualFunction(
                pci_address=device.address,
                driver=driver,
                vf_id=0,
                vendor=iface.vendor,
                device_id=iface.device_id,
                mtu=iface.mtu,
                mac=iface.mac,
            )
        )
        found.append(iface)
    return found


def need_update_virtual(iface: Interface, iface_status: InterfaceExt) -> bool:
    """Tell whether the VF drivers differ from the desired ones.

    The platform sets the MTU, and there is always exactly one VF.
    """
    if iface.num_vfs <= 0:
        return False
    for vf in iface_status.vfs:
        group = next((g for g in iface.vf_groups if index_in_range(vf.vf_id, g.vf_range)), None)
        if group is None:
            if vf.driver in DPDK_DRIVERS:
                return True
            continue
        if group.device_type != "netdevice":
            if group.device_type != vf.driver:
                log.debug("driver needs update, desired=%s, current=%s", group.device_type, vf.driver)
                return True
        elif vf.driver in DPDK_DRIVERS:
            log.debug("driver needs update, desired=%s, current=%s", group.device_type, vf.driver)
            return True
    return False


def config_sriov_device_virtual(iface: Interface, iface_status: InterfaceExt, sysfs: Sysfs) -> None:
    """Bind the single VF of a virtual device to the desired driver."""
    log.debug("configuring virtual interface %s", iface.pci_address)
    if iface.num_vfs <= 0:
        return
    if iface.num_vfs > 1:
        log.warning("only one VF per interface on a virtual platform (NumVfs: %d)", iface.num_vfs)
        raise ValueError("NumVfs > 1")
    if len(iface.vf_groups) != 1:
        log.warning("missing VF group")
        raise ValueError("NumVfs != 1")

    address = iface.pci_address
    driver = ""
    for group in iface.vf_groups:
        if index_in_range(0, group.vf_range):
            if group.device_type in DPDK_DRIVERS:
                driver = group.device_type
            break

    if driver:
        sysfs.bind_dpdk_driver(address, driver)
    else:
        sysfs.bind_default_driver(address)


def sync_node_state_virtual(state: NodeState, sysfs: Sysfs) -> None:
    """Bring a virtual node's devices in line with the desired state."""
    for status in state.status.interfaces:
        iface = next(
            (i for i in state.spec.interfaces if i.pci_address == status.pci_address), None
        )
        if iface is None:
            continue
        if not need_update_virtual(iface, status):
            log.debug("no need to update interface %s", iface.pci_address)
            continue
        config_sriov_device_virtual(iface, status, sysfs)