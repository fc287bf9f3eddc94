"""Access to PCI devices and network interfaces through sysfs."""

from __future__ import annotations

import logging
import os
import random
import re
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

log = logging.getLogger(__name__)

DPDK_DRIVERS = ("igb_uio", "vfio-pci", "uio_pci_generic")
NET_CLASS = 0x02
VENDOR_MELLANOX = "15b3"
NUM_VFS_FILE = "sriov_numvfs"
TOTAL_VFS_FILE = "sriov_totalvfs"
LOAD_KMOD_SCRIPT = "bindata/scripts/load-kmod.sh"
LOCKDOWN_PATH = "/sys/kernel/security/lockdown"

_ARPHRD_ETHER = 1
_ARPHRD_INFINIBAND = 32
_PF_PHYS_PORT_NAME = re.compile(r"p\d+")
_MAX_RETRIES = 10

_T = TypeVar("_T")


@dataclass
class PciDevice:
    """A PCI device as listed in sysfs; ids are lower-case hex without prefix."""

    address: str
    class_id: str = ""
    vendor_id: str = ""
    product_id: str = ""


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8") as handle:
        return handle.read().strip()


def _write_text(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(content)


def _hex_id(raw: str) -> str:
    raw = raw.strip().lower()
    return raw[2:] if raw.startswith("0x") else raw


class Sysfs:
    """PCI and network interface operations below a sysfs root directory."""

    def __init__(self, root: str = "/", retry_interval: float = 1.0) -> None:
        self.root = root or "/"
        self.retry_interval = retry_interval
        self.pci_devices = os.path.join(self.root, "sys/bus/pci/devices")
        self.pci_drivers = os.path.join(self.root, "sys/bus/pci/drivers")
        self.pci_drivers_probe = os.path.join(self.root, "sys/bus/pci/drivers_probe")
        self.class_net = os.path.join(self.root, "sys/class/net")

    def _device_path(self, pci_address: str, *parts: str) -> str:
        return os.path.join(self.pci_devices, pci_address, *parts)

    def _retry(self, action: Callable[[], _T]) -> _T:
        last_error: Exception | None = None
        for attempt in range(_MAX_RETRIES + 1):
            try:
                return action()
            except (OSError, ValueError) as exc:
                last_error = exc
                if attempt < _MAX_RETRIES:
                    time.sleep(self.retry_interval)
        assert last_error is not None
        raise last_error

    # Discovery

    def list_pci_devices(self) -> list[PciDevice]:
        """List every PCI device, ordered by address."""
        devices = []
        for address in sorted(os.listdir(self.pci_devices)):

            def field_of(name: str, address: str = address) -> str:
                try:
                    return _hex_id(_read_text(self._device_path(address, name)))
                except OSError:
                    return ""

            devices.append(
                PciDevice(
                    address=address,
                    class_id=field_of("class")[:2],
                    vendor_id=field_of("vendor"),
                    product_id=field_of("device"),
                )
            )
        return devices

    def driver_name(self, pci_address: str) -> str:
        """Return the driver bound to the device; raise OSError when there is none."""
        return os.path.basename(os.readlink(self._device_path(pci_address, "driver")))

    def net_names(self, pci_address: str) -> list[str]:
        """Return the network interface names of the device, sorted."""
        net_dir = self._device_path(pci_address, "net")
        if not os.path.lexists(net_dir):
            raise FileNotFoundError(f"no net directory under device {pci_address}")
        return sorted(os.listdir(net_dir))

    def is_sriov_vf(self, pci_address: str) -> bool:
        """Tell whether the device is a virtual function."""
        return os.path.lexists(self._device_path(pci_address, "physfn"))

    def is_sriov_pf(self, pci_address: str) -> bool:
        """Tell whether the device is an SR-IOV capable physical function."""
        return os.path.exists(self._device_path(pci_address, TOTAL_VFS_FILE))

    def _read_int(self, pci_address: str, name: str) -> int:
        try:
            return int(_read_text(self._device_path(pci_address, name)))
        except (OSError, ValueError):
            return 0

    def total_vfs(self, pci_address: str) -> int:
        """Return how many virtual functions the device supports, 0 if unknown."""
        return self._read_int(pci_address, TOTAL_VFS_FILE)

    def configured_vfs(self, pci_address: str) -> int:
        """Return how many virtual functions are configured, 0 if unknown."""
        return self._read_int(pci_address, NUM_VFS_FILE)

    def _virtfn_links(self, pci_address: str) -> list[tuple[int, str]]:
        device_dir = self._device_path(pci_address)
        if not os.path.isdir(device_dir):
            raise FileNotFoundError(f"no PCI device {pci_address}")
        links = []
        for entry in os.listdir(device_dir):
            if entry.startswith("virtfn") and entry[len("virtfn"):].isdigit():
                target = os.readlink(os.path.join(device_dir, entry))
                links.append((int(entry[len("virtfn"):]), os.path.basename(target)))
        return sorted(links)

    def vf_list(self, pci_address: str) -> list[str]:
        """Return the addresses of the device's virtual functions, by index."""
        return [address for _, address in self._virtfn_links(pci_address)]

    def vf_id(self, vf_address: str) -> int:
        """Return the index of a virtual function within its physical function."""
        pf_address = os.path.basename(os.readlink(self._device_path(vf_address, "physfn")))
        for index, address in self._virtfn_links(pf_address):
            if address == vf_address:
                return index
        raise LookupError(f"unable to find VF id for {vf_address}")

    # Driver binding

    def _has_driver(self, pci_address: str) -> str | None:
        try:
            driver = self.driver_name(pci_address)
        except OSError:
            log.debug("device %s has no driver", pci_address)
            return None
        log.debug("device %s driver is %s", pci_address, driver)
        return driver

    def unbind(self, pci_address: str) -> None:
        """Unbind the device from its driver, if it has one."""
        log.debug("unbind device %s driver", pci_address)
        driver = self._has_driver(pci_address)
        if driver is None:
            return
        _write_text(os.path.join(self.pci_drivers, driver, "unbind"), pci_address)

    def bind_dpdk_driver(self, pci_address: str, driver: str) -> None:
        """Bind the device to ``driver``."""
        log.debug("bind device %s to driver %s", pci_address, driver)
        current = self._has_driver(pci_address)
        if current is not None:
            if current == driver:
                log.debug("device %s already bound to driver %s", pci_address, driver)
                return
            self.unbind(pci_address)

        override_path = self._device_path(pci_address, "driver_override")
        _write_text(override_path, driver)
        try:
            _write_text(os.path.join(self.pci_drivers, driver, "bind"), pci_address)
        except OSError as exc:
            log.error("failed to bind driver for device %s: %s", pci_address, exc)
            try:
                os.readlink(self._device_path(pci_address, "iommu_group"))
            except OSError as iommu_exc:
                raise OSError(
                    f"Cannot bind driver {driver} to {pci_address}, "
                    "make sure IOMMU is enabled in BIOS"
                ) from iommu_exc
            raise
        _write_text(override_path, "")

    def bind_default_driver(self, pci_address: str) -> None:
        """Bind the device to its default kernel driver."""
        log.debug("bind device %s to default driver", pci_address)
        current = self._has_driver(pci_address)
        if current is not None:
            if current not in DPDK_DRIVERS:
                log.debug("device %s already bound to default driver %s", pci_address, current)
                return
            self.unbind(pci_address)
        _write_text(self._device_path(pci_address, "driver_override"), "\x00")
        _write_text(self.pci_drivers_probe, pci_address)

    # Configuration

    def set_sriov_num_vfs(self, pci_address: str, num_vfs: int) -> None:
        """Set the number of virtual functions, resetting to zero first."""
        log.debug("set NumVfs for device %s", pci_address)
        path = self._device_path(pci_address, NUM_VFS_FILE)
        _write_text(path, "0")
        _write_text(path, str(num_vfs))

    def set_netdev_mtu(self, pci_address: str, mtu: int) -> None:
        """Set the MTU of the device's interface, retrying until it appears."""
        log.debug("set MTU for device %s to %d", pci_address, mtu)
        if mtu <= 0:
            return

        def write_mtu() -> None:
            names = self.net_names(pci_address)
            if not names:
                raise ValueError("interface name is empty")
            _write_text(self._device_path(pci_address, "net", names[0], "mtu"), str(mtu))

        self._retry(write_mtu)

    def netdev_mtu(self, pci_address: str) -> int:
        """Return the MTU of the device's interface, 0 when unknown."""
        name = self.try_get_interface_name(pci_address)
        if not name:
            return 0
        try:
            return int(_read_text(self._device_path(pci_address, "net", name, "mtu")))
        except (OSError, ValueError):
            log.warning("failed to read mtu of device %s", pci_address)
            return 0

    def try_get_interface_name(self, pci_address: str) -> str:
        """Return the device's interface name, preferring a switchdev PF; '' if none."""
        try:
            names = self.net_names(pci_address)
        except OSError:
            return ""
        if not names:
            return ""
        for name in names:
            if not self.is_switchdev(name):
                continue
            try:
                port_name = self.phys_port_name(name)
            except OSError:
                return name
            if _PF_PHYS_PORT_NAME.search(port_name):
                return name
        return names[0]

    # Network interfaces

    def _class_net_value(self, name: str, attribute: str) -> str:
        return _read_text(os.path.join(self.class_net, name, attribute))

    def net_dev_mac(self, name: str) -> str:
        """Return the interface's MAC address, '' when unreadable."""
        try:
            return self._class_net_value(name, "address")
        except OSError:
            return ""

    def net_dev_link_speed(self, name: str) -> str:
        """Return the interface's link speed as '<n> Mb/s', '' when unreadable."""
        try:
            return f"{self._class_net_value(name, 'speed')} Mb/s"
        except OSError:
            return ""

    def phys_switch_id(self, name: str) -> str:
        """Return the interface's physical switch id; raise OSError when absent."""
        return self._class_net_value(name, "phys_switch_id")

    def phys_port_name(self, name: str) -> str:
        """Return the interface's physical port name; raise OSError when absent."""
        return self._class_net_value(name, "phys_port_name")

    def is_switchdev(self, name: str) -> bool:
        """Tell whether the interface belongs to a switchdev e-switch."""
        try:
            return self.phys_switch_id(name) != ""
        except OSError:
            return False

    def link_type(self, name: str) -> str:
        """Return 'ETH' or 'IB' for the interface's link type, '' otherwise."""
        if not name:
            return ""
        try:
            hw_type = int(self._class_net_value(name, "type"))
        except (OSError, ValueError) as exc:
            log.warning("cannot read link type of %s: %s", name, exc)
            return ""
        if hw_type == _ARPHRD_ETHER:
            return "ETH"
        if hw_type == _ARPHRD_INFINIBAND:
            return "IB"
        return ""


def run_command(command: str, *args: str) -> str:
    """Run a command and return its standard output.

    Raises CalledProcessError, carrying the output, when the command fails.
    """
    log.info("run command: %s %s", command, list(args))
    result = subprocess.run(
        [command, *args], capture_output=True, text=True, check=False
    )
    log.debug("command output: %s", result.stdout)
    if result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode, [command, *args], output=result.stdout, stderr=result.stderr
        )
    return result.stdout


def is_kernel_lockdown_mode(chroot: bool) -> bool:
    """Tell whether kernel lockdown is in integrity or confidentiality mode."""
    path = LOCKDOWN_PATH if chroot else "/host" + LOCKDOWN_PATH
    try:
        out = run_command("cat", path)
    except (subprocess.CalledProcessError, OSError) as exc:
        log.debug("cannot read lockdown mode: %s", exc)
        return False
    return "[integrity]" in out or "[confidentiality]" in out


def load_kernel_module(name: str, script_path: str = LOAD_KMOD_SCRIPT) -> None:
    """Load a kernel module through the module loading script."""
    log.info("loading kernel module %s", name)
    subprocess.run(["/bin/sh", script_path, name], check=True)


def generate_random_guid() -> bytes:
    """Return a random 8-byte GUID whose first byte is neither 0x00 nor 0xff."""
    return bytes([1 + random.randrange(0xFE)] + [random.randrange(0x100) for _ in range(7)])