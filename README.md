# sriovconf

A library for configuring SR-IOV network devices on a Linux node. It:

- discovers network physical functions and their virtual functions through sysfs,
- brings a node to a desired state: VF counts, MTUs, default or DPDK drivers,
- checks SR-IOV node policies and operator configurations the way an
  admission webhook would, and fills in policy defaults as a JSON patch,
- renders YAML/JSON manifest templates with Jinja2 and edits systemd unit files,
- provides plugins (generic, Intel, Mellanox, virtual) that decide whether a
  node must be drained or rebooted before a change, and then apply it.

Most operations that change the system need root: they write to sysfs, call
`chroot`, and run `ip`, `devlink`, `systemctl`, `mstconfig` or shell scripts.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Node state

`sriovconf.models` describes a node with dataclasses. A `NodeState` holds a
`NodeStateSpec` (desired `Interface` entries, each with `VfGroup`s) and a
`NodeStateStatus` (observed `InterfaceExt` entries, each with
`VirtualFunction`s).

```python
from sriovconf.models import Interface, NodeState, NodeStateSpec, VfGroup, index_in_range

state = NodeState(spec=NodeStateSpec(interfaces=[
    Interface(pci_address="0000:86:00.1", num_vfs=4,
              vf_groups=[VfGroup(device_type="netdevice", resource_name="nic1", vf_range="0-3")]),
]))
index_in_range(2, "0-3")                           # True
state.interface_state_by_pci_address("0000:86:00.1")  # None: nothing observed yet
```

`is_switchdev_mode_spec(spec)` tells whether any interface asks for switchdev
mode. `write_switchdev_conf_file(state, path)` writes one
`<pci address> <num vfs>` line per switchdev interface, creating the file if
needed, and returns `(update, remove)`: whether the file changed and whether
it was emptied.

## Sysfs, discovery and sync

`sriovconf.sysfs.Sysfs(root, retry_interval)` reads and writes the PCI device
and network class trees under `root`, so it can be pointed at a fake tree.
It lists PCI devices, finds drivers, interface names, VF lists and VF
indexes, binds devices to DPDK drivers (`bind_dpdk_driver`) or back to their
default driver (`bind_default_driver`), sets VF counts and MTUs (retrying
while the interface appears), and reads MAC, link speed, link type and
switchdev attributes. The module also has `run_command`,
`is_kernel_lockdown_mode`, `load_kernel_module` and `generate_random_guid`.

```python
from sriovconf.sysfs import Sysfs
from sriovconf.sriov import discover_sriov_devices, sync_node_state

sysfs = Sysfs("/")
state.status.interfaces = discover_sriov_devices(sysfs)
sync_node_state(state, sysfs, initial_state=None, cluster_type="kubernetes")
```

`sync_node_state` configures every observed interface whose desired state
differs (`need_update`, `config_sriov_device`) and resets those no longer
desired (`reset_sriov_device`). It refuses Mellanox interfaces while the
kernel is in lockdown mode, and on `openshift` clusters leaves switchdev
interfaces alone. `cluster_type` defaults to the `CLUSTER_TYPE` environment
variable.

On virtual platforms, `sriovconf.virtual_platform` reads OpenStack metadata
(`read_openstack_meta_data`, `parse_openstack_meta_data`) and treats each
NIC as its own single VF (`discover_sriov_devices_virtual`,
`sync_node_state_virtual`).

## Plugins

Every plugin in `sriovconf.plugins` derives from `sriovconf.plugins.base.Plugin`:

- `on_node_state_add(state)` and `on_node_state_change(old, new)` return
  `(need_drain, need_reboot)` and raise on failure,
- `apply()` carries out the change.

| Plugin | Module | What it does |
| --- | --- | --- |
| `IntelPlugin` | `plugins.base` | nothing vendor-specific |
| `GenericPlugin` | `plugins.generic_plugin` | drain checks, IOMMU kernel args, vfio-pci loading, `sync_node_state` |
| `VirtualPlugin` | `plugins.virtual_plugin` | vfio-pci loading, `sync_node_state_virtual` |
| `MellanoxPlugin` | `plugins.mellanox_plugin` | VF count, SR-IOV and link type in NIC firmware via `mstconfig` |

`GenericPlugin` and `VirtualPlugin` apply inside a chroot of `/host` by
default; pass `chroot_path=None` to skip it. `MellanoxPlugin` accepts a
command runner and a lockdown check, so it can be driven without hardware;
its helpers `parse_mstconfig_output`, `mlnx_nic_from_map`,
`handle_total_vfs`, `handle_enable_sriov` and `build_mstconfig_args` work on
their own.

## Policy validation and admission

`sriovconf.validate` checks `SriovNetworkNodePolicy` and `SriovOperatorConfig`
objects against a table of supported NICs and against the nodes, node states
and other policies you pass in. Failures raise `PolicyValidationError`,
whose `warnings` holds what was noted before the failure.

```python
from sriovconf.validate import SupportedNics, SriovNetworkNodePolicy, static_validate_sriov_network_node_policy

nics = SupportedNics(["8086 158b 154c", "15b3 1015 1016"])   # vendor, device, VF device
policy = SriovNetworkNodePolicy.from_dict({
    "metadata": {"name": "p0"},
    "spec": {"resourceName": "p0", "numVfs": 8, "nicSelector": {"vendor": "8086", "deviceID": "158b"}},
})
static_validate_sriov_network_node_policy(policy, nics)   # True
```

`sriovconf.mutate.mutate_sriov_network_node_policy` returns an
`AdmissionResponse` whose patch adds default priority, device type, RDMA and
link type. `sriovconf.admission` applies both to admission review
dictionaries: `mutate_custom_resource(review)` and
`validate_custom_resource(review, nics, namespace, nodes, node_states, policies)`.

## Templates and units

`sriovconf.render` renders manifest templates with Jinja2 (`render_template`,
`render_dir`) into lists of object dictionaries. Values in `RenderData.data`
are top-level template variables and are also reachable as `data`; functions
in `RenderData.funcs`, plus `getOr` and `isSet`, are available in every
template. `collect_machine_config_templates` renders the `files`,
`ovs-units` and `switchdev-units` directories of a machine configuration
directory and returns the rendered files and units ordered by file name.

`sriovconf.service` parses and writes systemd unit files
(`deserialize_unit`, `serialize_unit`), compares, extends or trims services
(`compare_services`, `append_to_service`, `remove_from_service`), reads
service and script manifests, and `ServiceManager` reads and enables units
below a root directory.

## TLS certificates

`sriovconf.tlsreload.TlsKeypairReloader(cert_path, key_path)` loads a server
certificate and key; `reload()` swaps in a fresh pair while keeping the old
one on failure, and `context()` returns the current `ssl.SSLContext`.

## What it does not do

The package is a library only. It has no command-line program, runs no
webhook HTTP server and talks to no cluster API: nodes, node states and
policies are passed in as objects, and responses are returned as
`AdmissionResponse` values. Machine configuration templates are rendered to
text, but not assembled into a machine configuration object.