# snap2nbd/vmware/disk_resolver.py
# -*- coding: utf-8 -*-
"""
(VM name, snapshot name) -> everything a VDDK export needs to address the disk.

Read-only: nothing here mutates inventory, nothing is retried. Remote failures
surface as VSphereConnectionError / AuthenticationError via remote_call(),
missing objects as NotFoundError, half-resolved objects as
ResolutionIncompleteError.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from pyVmomi import vim

from ..core.context import CallContext, background
from ..core.exceptions import NoSnapshotsError, NotFoundError, ResolutionIncompleteError
from .session import SessionManager, remote_call

_DELTA_SUFFIX_RE = re.compile(r"^(?P<stem>.*)-[0-9]{6}\.vmdk$")
_DATASTORE_RE = re.compile(r"^\[([^\]]+)\]")

# Backings that expose fileName + parent (delta chain aware).
DISK_BACKINGS = (
    vim.vm.device.VirtualDisk.FlatVer2BackingInfo,
    vim.vm.device.VirtualDisk.SeSparseBackingInfo,
    vim.vm.device.VirtualDisk.SparseVer2BackingInfo,
    vim.vm.device.VirtualDisk.RawDiskMappingVer1BackingInfo,
)

_HA_DATACENTER_NAMES = ("ha-datacenter", "Ha-Datacenter", "HA-Datacenter")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def derive_base_disk_path(path: str) -> str:
    """
    Strip a delta-disk suffix: exactly "-" + 6 ASCII digits right before ".vmdk".

      "[ds] vm/vm-000002.vmdk" -> "[ds] vm/vm.vmdk"
      "[ds] vm/vm.vmdk"        -> unchanged
      "[ds] vm/vm-12.vmdk"     -> unchanged
    """
    m = _DELTA_SUFFIX_RE.match(path or "")
    if not m:
        return path
    return m.group("stem") + ".vmdk"


def moref(obj: Any) -> str:
    moid = getattr(obj, "_moId", None)
    if not moid:
        raise ResolutionIncompleteError(msg=f"Could not determine MoRef (_moId missing) for {obj!r}")
    return str(moid)


@dataclass(frozen=True)
class SnapshotNode:
    id: str
    name: str
    children: Tuple["SnapshotNode", ...] = ()
    description: str = ""
    create_time: Any = None
    state: str = ""
    quiesced: bool = False
    ref: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_vim(cls, tree: Any) -> "SnapshotNode":
        ref = getattr(tree, "snapshot", None)
        return cls(
            id=moref(ref),
            name=str(getattr(tree, "name", "") or ""),
            children=tuple(cls.from_vim(ch) for ch in (getattr(tree, "childSnapshotList", None) or [])),
            description=str(getattr(tree, "description", "") or ""),
            create_time=getattr(tree, "createTime", None),
            state=str(getattr(tree, "state", "") or ""),
            quiesced=bool(getattr(tree, "quiesced", False)),
            ref=ref,
        )


def snapshot_tree_from_vim(root_list: Optional[Iterable[Any]]) -> Tuple[SnapshotNode, ...]:
    return tuple(SnapshotNode.from_vim(t) for t in (root_list or []))


def find_snapshot(nodes: Sequence[SnapshotNode], name: str) -> Optional[SnapshotNode]:
    """Depth-first pre-order search; first exact name match wins."""
    for node in nodes:
        if node.name == name:
            return node
        hit = find_snapshot(node.children, name)
        if hit is not None:
            return hit
    return None


def walk_snapshots(nodes: Sequence[SnapshotNode], depth: int = 0) -> Iterator[Tuple[int, SnapshotNode]]:
    for node in nodes:
        yield depth, node
        yield from walk_snapshots(node.children, depth + 1)


def inventory_path(obj: Any) -> Optional[str]:
    """
    "/<dc>/host/<cluster>/<host>" style path, root folder excluded.
    None when any element on the way up has no name.
    """
    names: List[str] = []
    cur = obj
    for _ in range(0, 64):
        if cur is None:
            break
        parent = getattr(cur, "parent", None)
        if parent is None:
            break  # root folder
        name = str(getattr(cur, "name", "") or "").strip()
        if not name:
            return None
        names.append(name)
        cur = parent
    if not names:
        return None
    return "/" + "/".join(reversed(names))


@dataclass(frozen=True)
class SnapshotDiskInfo:
    vm_id: str
    snapshot_id: Optional[str]
    disk_paths: Tuple[str, ...]
    base_disk_paths: Tuple[str, ...]
    compute_resource_path: str
    vm_name: str = ""
    snapshot_name: Optional[str] = None
    datacenter: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vm_id": self.vm_id,
            "vm_name": self.vm_name,
            "snapshot_id": self.snapshot_id,
            "snapshot_name": self.snapshot_name,
            "datacenter": self.datacenter,
            "compute_resource_path": self.compute_resource_path,
            "disk_paths": list(self.disk_paths),
            "base_disk_paths": list(self.base_disk_paths),
        }


@dataclass(frozen=True)
class VMSummary:
    id: str
    name: str
    uuid: str = ""
    power_state: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "uuid": self.uuid, "power_state": self.power_state}


def datastore_of(path: str) -> Optional[str]:
    """Datastore name of a "[ds1] web01/web01.vmdk" style path."""
    m = _DATASTORE_RE.match(path or "")
    return m.group(1) if m else None


def _text(obj: Any, attr: str) -> str:
    v = getattr(obj, attr, None) if obj is not None else None
    return str(v) if v is not None else ""


def _disk_detail(dev: Any) -> Dict[str, Any]:
    backing = getattr(dev, "backing", None)
    path = _text(backing, "fileName")
    thin = getattr(backing, "thinProvisioned", None)
    return {
        "label": _text(getattr(dev, "deviceInfo", None), "label"),
        "key": getattr(dev, "key", None),
        "capacity_kb": getattr(dev, "capacityInKB", None),
        "disk_path": path,
        "datastore": datastore_of(path),
        "thin_provisioned": bool(thin) if thin is not None else None,
        "disk_mode": _text(backing, "diskMode"),
        "controller_key": getattr(dev, "controllerKey", None),
    }


def _nic_detail(dev: Any) -> Dict[str, Any]:
    backing = getattr(dev, "backing", None)
    network = _text(backing, "deviceName")
    if not network:
        # distributed switch backings carry a port group key instead of a name
        network = _text(getattr(backing, "port", None), "portgroupKey")
    return {
        "label": _text(getattr(dev, "deviceInfo", None), "label"),
        "key": getattr(dev, "key", None),
        "adapter_type": type(dev).__name__.rsplit(".", 1)[-1],
        "mac": _text(dev, "macAddress"),
        "network_name": network,
        "connected": bool(getattr(getattr(dev, "connectable", None), "connected", False)),
    }


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class DiskResolver:
    def __init__(self, session: SessionManager, logger: logging.Logger):
        self.session = session
        self.logger = logger

    # ---------------------------
    # Datacenter
    # ---------------------------

    def _list_datacenters(self, content: Any) -> List[Any]:
        view = content.viewManager.CreateContainerView(content.rootFolder, [vim.Datacenter], True)
        try:
            return list(view.view)
        finally:
            view.Destroy()

    def default_datacenter(self, ctx: Optional[CallContext] = None) -> Any:
        """
        configured name > the only datacenter > ha-datacenter > alphabetical first.
        The last two log a warning: the choice is a guess.
        """
        content = self.session.get_connection(ctx).content
        wanted = self.session.settings.datacenter
        with remote_call("list_datacenters"):
            dcs = self._list_datacenters(content)
            by_name = {str(dc.name): dc for dc in dcs}
        if wanted:
            if wanted not in by_name:
                raise NotFoundError(
                    msg=f"Datacenter not found: {wanted!r} (available: {sorted(by_name)})",
                    context={"kind": "datacenter", "name": wanted},
                )
            return by_name[wanted]
        if not dcs:
            raise NotFoundError(msg="No datacenters found in inventory", context={"kind": "datacenter"})
        if len(dcs) == 1:
            return dcs[0]
        for cand in _HA_DATACENTER_NAMES:
            if cand in by_name:
                pick = cand
                break
        else:
            pick = sorted(by_name)[0]
        self.logger.warning(
            "Multiple datacenters %s and none configured; using %r (set --datacenter to choose)", sorted(by_name), pick
        )
        return by_name[pick]

    # ---------------------------
    # VM lookup
    # ---------------------------

    def find_vm_and_datacenter(self, name: str, ctx: Optional[CallContext] = None) -> Tuple[Any, Any]:
        ctx = ctx or background()
        dc = self.default_datacenter(ctx)
        content = self.session.get_connection(ctx).content
        with remote_call("find_vm_by_name", vm=name):
            view = content.viewManager.CreateContainerView(dc.vmFolder, [vim.VirtualMachine], True)
            try:
                for vm_obj in view.view:
                    if getattr(vm_obj, "name", None) == name:
                        return vm_obj, dc
            finally:
                view.Destroy()
        raise NotFoundError(msg=f"VM not found: {name!r}", context={"kind": "vm", "name": name, "datacenter": str(dc.name)})

    def find_vm_by_name(self, name: str, ctx: Optional[CallContext] = None) -> Any:
        n = (name or "").strip()
        if not n:
            raise NotFoundError(msg="VM name is empty", context={"kind": "vm"})
        vm_obj, _dc = self.find_vm_and_datacenter(n, ctx)
        return vm_obj

    def find_vm_by_uuid(self, uuid: str, ctx: Optional[CallContext] = None) -> Tuple[Any, Any]:
        """BIOS UUID first, then instance UUID. Returns (vm, datacenter)."""
        ctx = ctx or background()
        uuid = (uuid or "").strip()
        if not uuid:
            raise NotFoundError(msg="VM UUID is empty", context={"kind": "vm"})
        dc = self.default_datacenter(ctx)
        content = self.session.get_connection(ctx).content
        with remote_call("find_vm_by_uuid", uuid=uuid):
            vm_obj = content.searchIndex.FindByUuid(dc, uuid, True, False)
            if vm_obj is None:
                vm_obj = content.searchIndex.FindByUuid(dc, uuid, True, True)
        if vm_obj is None:
            raise NotFoundError(
                msg=f"VM not found by UUID: {uuid!r}",
                context={"kind": "vm", "uuid": uuid, "datacenter": str(dc.name)},
            )
        return vm_obj, dc

    # ---------------------------
    # Listing / detail
    # ---------------------------

    def list_vms(
        self,
        ctx: Optional[CallContext] = None,
        *,
        name: Optional[str] = None,
        power_state: Optional[str] = None,
    ) -> List[VMSummary]:
        """
        VMs of the default datacenter, sorted by name.

        name: case-insensitive substring filter
        power_state: poweredOn / poweredOff / suspended (case-insensitive)
        """
        ctx = ctx or background()
        dc = self.default_datacenter(ctx)
        content = self.session.get_connection(ctx).content
        needle = (name or "").strip().lower()
        want_state = (power_state or "").strip().lower()
        out: List[VMSummary] = []
        with remote_call("list_vms", datacenter=str(dc.name)):
            view = content.viewManager.CreateContainerView(dc.vmFolder, [vim.VirtualMachine], True)
            try:
                for vm_obj in view.view:
                    vm_name = _text(vm_obj, "name")
                    state = _text(getattr(vm_obj, "runtime", None), "powerState")
                    if needle and needle not in vm_name.lower():
                        continue
                    if want_state and state.lower() != want_state:
                        continue
                    out.append(VMSummary(
                        id=moref(vm_obj),
                        name=vm_name,
                        uuid=_text(getattr(vm_obj, "config", None), "uuid"),
                        power_state=state,
                    ))
            finally:
                view.Destroy()
        out.sort(key=lambda v: v.name)
        self.logger.debug("Listed %d VM(s) in %s", len(out), dc.name)
        return out

    def vm_info(
        self,
        ctx: Optional[CallContext] = None,
        *,
        vm_name: Optional[str] = None,
        uuid: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Detailed, JSON-friendly description of one VM, looked up by name or UUID."""
        ctx = ctx or background()
        if uuid:
            vm_obj, dc = self.find_vm_by_uuid(uuid, ctx)
        elif vm_name and vm_name.strip():
            vm_obj, dc = self.find_vm_and_datacenter(vm_name.strip(), ctx)
        else:
            raise NotFoundError(msg="VM name or UUID is required", context={"kind": "vm"})
        with remote_call("vm_info", vm=vm_name or uuid):
            return self.describe_vm(vm_obj, dc)

    def describe_vm(self, vm_obj: Any, dc: Any) -> Dict[str, Any]:
        cfg = getattr(vm_obj, "config", None)
        hw = getattr(cfg, "hardware", None)
        guest = getattr(vm_obj, "guest", None)
        runtime = getattr(vm_obj, "runtime", None)
        host = getattr(runtime, "host", None)

        disks: List[Dict[str, Any]] = []
        nics: List[Dict[str, Any]] = []
        for dev in getattr(hw, "device", None) or []:
            if isinstance(dev, vim.vm.device.VirtualDisk):
                disks.append(_disk_detail(dev))
            elif isinstance(dev, vim.vm.device.VirtualEthernetCard):
                nics.append(_nic_detail(dev))

        info = getattr(vm_obj, "snapshot", None)
        roots = snapshot_tree_from_vim(getattr(info, "rootSnapshotList", None))
        current = getattr(getattr(info, "currentSnapshot", None), "_moId", None)
        snapshots = [
            {
                "id": node.id,
                "name": node.name,
                "description": node.description,
                "create_time": node.create_time,
                "state": node.state,
                "quiesced": node.quiesced,
                "depth": depth,
                "current": node.id == current,
            }
            for depth, node in walk_snapshots(roots)
        ]

        return {
            "datacenter": str(getattr(dc, "name", "") or "") or None,
            "id": moref(vm_obj),
            "name": _text(vm_obj, "name"),
            "uuid": _text(cfg, "uuid"),
            "instance_uuid": _text(cfg, "instanceUuid"),
            "guest_id": _text(cfg, "guestId"),
            "guest_full_name": _text(cfg, "guestFullName"),
            "annotation": _text(cfg, "annotation"),
            "template": bool(getattr(cfg, "template", False)),
            "power_state": _text(runtime, "powerState"),
            "hardware": {
                "num_cpu": getattr(hw, "numCPU", None),
                "num_cores_per_socket": getattr(hw, "numCoresPerSocket", None),
                "memory_mb": getattr(hw, "memoryMB", None),
                "version": _text(cfg, "version"),
                "firmware": _text(cfg, "firmware"),
            },
            "guest": {
                "state": _text(guest, "guestState"),
                "hostname": _text(guest, "hostName"),
                "ip_address": _text(guest, "ipAddress"),
                "tools_status": _text(guest, "toolsStatus"),
                "tools_running_status": _text(guest, "toolsRunningStatus"),
                "tools_version": _text(guest, "toolsVersion"),
            },
            "runtime": {
                "host": (inventory_path(host) or _text(host, "name")) if host is not None else None,
                "connection_state": _text(runtime, "connectionState"),
                "boot_time": getattr(runtime, "bootTime", None),
                "consolidation_needed": bool(getattr(runtime, "consolidationNeeded", False)),
            },
            "disks": disks,
            "network_adapters": nics,
            "snapshots": snapshots,
        }

    # ---------------------------
    # Snapshots
    # ---------------------------

    def list_snapshots(self, vm_name: str, ctx: Optional[CallContext] = None) -> Tuple[SnapshotNode, ...]:
        """Root nodes of the VM's snapshot tree (empty when it has none)."""
        vm_obj = self.find_vm_by_name(vm_name, ctx)
        with remote_call("list_snapshots", vm=vm_name):
            info = vm_obj.snapshot
            return snapshot_tree_from_vim(info.rootSnapshotList if info is not None else None)

    def locate_snapshot(
        self, vm_name: str, snapshot_name: str, ctx: Optional[CallContext] = None
    ) -> Tuple[Any, Any, SnapshotNode]:
        vm_obj, dc = self.find_vm_and_datacenter(vm_name, ctx)
        with remote_call("resolve_snapshot", vm=vm_name, snapshot=snapshot_name):
            info = vm_obj.snapshot
            roots = snapshot_tree_from_vim(info.rootSnapshotList if info is not None else None)
        if not roots:
            raise NoSnapshotsError(msg=f"VM {vm_name!r} has no snapshots", context={"kind": "snapshot", "vm": vm_name})
        node = find_snapshot(roots, snapshot_name)
        if node is None:
            raise NotFoundError(
                msg=f"Snapshot {snapshot_name!r} not found on VM {vm_name!r}",
                context={"kind": "snapshot", "vm": vm_name, "snapshot": snapshot_name},
            )
        return vm_obj, dc, node

    def resolve_snapshot(self, vm_name: str, snapshot_name: str, ctx: Optional[CallContext] = None) -> Tuple[Any, SnapshotNode]:
        vm_obj, _dc, node = self.locate_snapshot(vm_name, snapshot_name, ctx)
        return vm_obj, node

    # ---------------------------
    # Disks / compute
    # ---------------------------

    def _disk_paths(self, vm_obj: Any, vm_name: str) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        disks: List[str] = []
        bases: List[str] = []
        devices = getattr(getattr(getattr(vm_obj, "config", None), "hardware", None), "device", None) or []
        for dev in devices:
            if not isinstance(dev, vim.vm.device.VirtualDisk):
                continue
            label = getattr(getattr(dev, "deviceInfo", None), "label", None) or f"key={getattr(dev, 'key', '?')}"
            backing = getattr(dev, "backing", None)
            if not isinstance(backing, DISK_BACKINGS):
                self.logger.warning(
                    "VM %r disk %s: unsupported backing %s, skipped", vm_name, label, type(backing).__name__
                )
                continue
            path = str(getattr(backing, "fileName", "") or "")
            if not path:
                self.logger.warning("VM %r disk %s: backing has no file name, skipped", vm_name, label)
                continue
            parent = getattr(backing, "parent", None)
            parent_file = str(getattr(parent, "fileName", "") or "") if parent is not None else ""
            if parent_file:
                base = parent_file
                self.logger.debug("Disk %s: parent file from backing: %s", path, base)
            else:
                base = derive_base_disk_path(path)
                self.logger.debug("Disk %s: derived base path: %s", path, base)
            disks.append(path)
            bases.append(base)
        return tuple(disks), tuple(bases)

    def _compute_resource_path(self, vm_obj: Any, vm_name: str) -> str:
        host = getattr(getattr(vm_obj, "runtime", None), "host", None)
        if host is None:
            raise ResolutionIncompleteError(
                msg=f"VM {vm_name!r} has no runtime host; cannot derive compute resource path",
                context={"vm": vm_name},
            )
        path = inventory_path(host)
        if path:
            self.logger.debug("Compute resource path from host: %s", path)
            return path
        parent = getattr(host, "parent", None)
        path = inventory_path(parent) if parent is not None else None
        if path:
            self.logger.debug("Compute resource path from host parent: %s", path)
            return path
        raise ResolutionIncompleteError(
            msg=f"Failed to get compute resource path for VM {vm_name!r}",
            context={"vm": vm_name},
        )

    def _disk_info(
        self,
        vm_obj: Any,
        dc: Any,
        vm_name: str,
        snapshot: Optional[SnapshotNode],
    ) -> SnapshotDiskInfo:
        op = "get_snapshot_disk_info" if snapshot is not None else "get_vm_disk_info"
        with remote_call(op, vm=vm_name):
            vm_id = moref(vm_obj)
            disks, bases = self._disk_paths(vm_obj, vm_name)
            if not disks:
                raise NotFoundError(msg=f"No disks found for VM {vm_name!r}", context={"kind": "disk", "vm": vm_name})
            if len(bases) != len(disks) or not all(bases):
                raise ResolutionIncompleteError(
                    msg=f"No base disk paths found for VM {vm_name!r}",
                    context={"vm": vm_name, "disk_paths": list(disks)},
                )
            compute = self._compute_resource_path(vm_obj, vm_name)
            dc_name = str(getattr(dc, "name", "") or "") or None

        info = SnapshotDiskInfo(
            vm_id=vm_id,
            snapshot_id=snapshot.id if snapshot is not None else None,
            disk_paths=disks,
            base_disk_paths=bases if snapshot is not None else disks,
            compute_resource_path=compute,
            vm_name=vm_name,
            snapshot_name=snapshot.name if snapshot is not None else None,
            datacenter=dc_name,
        )
        self.logger.debug(
            "Resolved %s: vm=%s snapshot=%s disks=%d compute=%s",
            vm_name, info.vm_id, info.snapshot_id, len(disks), compute,
        )
        return info

    def get_snapshot_disk_info(
        self, vm_name: str, snapshot_name: str, ctx: Optional[CallContext] = None
    ) -> SnapshotDiskInfo:
        vm_obj, dc, node = self.locate_snapshot(vm_name, snapshot_name, ctx)
        return self._disk_info(vm_obj, dc, vm_name, node)

    def get_vm_disk_info(self, vm_name: str, ctx: Optional[CallContext] = None) -> SnapshotDiskInfo:
        """Current-state disks (used for linked clones, which have no snapshot of their own)."""
        vm_obj, dc = self.find_vm_and_datacenter(vm_name, ctx)
        return self._disk_info(vm_obj, dc, vm_name, None)
