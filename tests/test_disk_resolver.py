import logging
import unittest
from types import SimpleNamespace

from pyVmomi import vim

from snap2nbd.core.exceptions import NoSnapshotsError, NotFoundError, ResolutionIncompleteError
from snap2nbd.vmware.disk_resolver import (
    DiskResolver,
    SnapshotNode,
    datastore_of,
    derive_base_disk_path,
    find_snapshot,
    inventory_path,
    moref,
    walk_snapshots,
)

LOG = logging.getLogger("snap2nbd.tests.resolver")

Disk = vim.vm.device.VirtualDisk


# ---------------------------------------------------------------------------
# Fake inventory
# ---------------------------------------------------------------------------

class FakeView:
    def __init__(self, items, owner):
        self.view = list(items)
        self._owner = owner

    def Destroy(self):
        self._owner.destroyed += 1


class FakeViewManager:
    def __init__(self, datacenters, vms_by_folder):
        self.datacenters = datacenters
        self.vms_by_folder = vms_by_folder
        self.created = 0
        self.destroyed = 0

    def CreateContainerView(self, container, types, recursive):
        self.created += 1
        if types == [vim.Datacenter]:
            return FakeView(self.datacenters, self)
        return FakeView(self.vms_by_folder.get(id(container), []), self)


class FakeSearchIndex:
    def __init__(self, vms):
        self.vms = vms
        self.calls = []

    def FindByUuid(self, datacenter, uuid, vmSearch, instanceUuid):
        self.calls.append((datacenter.name, uuid, instanceUuid))
        attr = "instanceUuid" if instanceUuid else "uuid"
        for vm in self.vms:
            if getattr(vm.config, attr, None) == uuid:
                return vm
        return None


def snap(moid, name, *children):
    return SimpleNamespace(
        snapshot=SimpleNamespace(_moId=moid),
        name=name,
        description=f"{name} snapshot",
        createTime=None,
        state="poweredOff",
        quiesced=False,
        childSnapshotList=list(children),
    )


def flat(path, parent=None):
    b = Disk.FlatVer2BackingInfo(fileName=path, diskMode="persistent")
    if parent is not None:
        b.parent = Disk.FlatVer2BackingInfo(fileName=parent, diskMode="persistent")
    return b


def disk(key, backing):
    return Disk(key=key, backing=backing)


class Inventory:
    """root -> DC1 -> host -> Cluster1 -> esx01, one VM folder."""

    def __init__(self, *, dc_names=("DC1",)):
        self.root = SimpleNamespace(name="Datacenters", parent=None)
        self.dcs = []
        for n in dc_names:
            self.dcs.append(SimpleNamespace(name=n, parent=self.root, vmFolder=SimpleNamespace(name="vm")))
        dc = self.dcs[0]
        host_folder = SimpleNamespace(name="host", parent=dc)
        self.cluster = SimpleNamespace(name="Cluster1", parent=host_folder)
        self.host = SimpleNamespace(name="esx01", parent=self.cluster)
        self.vms = []
        self.views = FakeViewManager(self.dcs, {id(d.vmFolder): self.vms for d in self.dcs})
        self.search = FakeSearchIndex(self.vms)
        self.content = SimpleNamespace(viewManager=self.views, rootFolder=self.root, searchIndex=self.search)

    def add_vm(self, name, moid, devices, snapshots=None, host="default", *, uuid=None, instance_uuid=None,
               power_state="poweredOn"):
        vm = SimpleNamespace(
            _moId=moid,
            name=name,
            snapshot=SimpleNamespace(rootSnapshotList=snapshots) if snapshots else None,
            config=SimpleNamespace(
                hardware=SimpleNamespace(device=devices),
                uuid=uuid or f"4201-{moid}",
                instanceUuid=instance_uuid or f"5001-{moid}",
            ),
            runtime=SimpleNamespace(host=self.host if host == "default" else host, powerState=power_state),
        )
        self.vms.append(vm)
        return vm

    def resolver(self, datacenter=None):
        session = SimpleNamespace(
            get_connection=lambda ctx=None: SimpleNamespace(content=self.content),
            settings=SimpleNamespace(datacenter=datacenter),
        )
        return DiskResolver(session, LOG)


def web01_inventory():
    inv = Inventory()
    inv.add_vm(
        "web01",
        "vm-42",
        [
            disk(2000, flat("[ds1] web01/web01-000004.vmdk")),
            vim.vm.device.VirtualCdrom(key=3000),
        ],
        snapshots=[snap("snapshot-5", "pre-upgrade")],
    )
    return inv


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestDeriveBaseDiskPath(unittest.TestCase):
    def test_strips_six_digit_delta_suffix(self):
        self.assertEqual(derive_base_disk_path("[ds1] vm/vm-000002.vmdk"), "[ds1] vm/vm.vmdk")
        self.assertEqual(derive_base_disk_path("[ds1] web01/web01-000004.vmdk"), "[ds1] web01/web01.vmdk")

    def test_leaves_other_paths_alone(self):
        for p in (
            "[ds1] vm/vm.vmdk",
            "[ds1] vm/vm-12.vmdk",
            "[ds1] vm/vm-0000002.vmdk",
            "[ds1] vm/vm-000002.vmdk.bak",
            "[ds1] vm/vm-000002-flat.vmdk",
            "",
        ):
            self.assertEqual(derive_base_disk_path(p), p)

    def test_unicode_digits_are_not_a_delta_suffix(self):
        for p in ("[ds1] vm/vm-٠٠٠٠٠٢.vmdk", "[ds1] vm/vm-０００００１.vmdk"):
            self.assertEqual(derive_base_disk_path(p), p)

    def test_only_the_final_suffix_is_stripped(self):
        self.assertEqual(derive_base_disk_path("[ds1] a-000001/b-000003.vmdk"), "[ds1] a-000001/b.vmdk")


class TestSnapshotTree(unittest.TestCase):
    def setUp(self):
        c = SnapshotNode(id="snapshot-3", name="C")
        b = SnapshotNode(id="snapshot-2", name="B", children=(c,))
        d = SnapshotNode(id="snapshot-4", name="D")
        self.roots = (SnapshotNode(id="snapshot-1", name="A", children=(b, d)),)

    def test_find_nested(self):
        self.assertEqual(find_snapshot(self.roots, "C").id, "snapshot-3")
        self.assertEqual(find_snapshot(self.roots, "A").id, "snapshot-1")
        self.assertIsNone(find_snapshot(self.roots, "X"))
        self.assertIsNone(find_snapshot((), "A"))

    def test_first_match_in_preorder_wins(self):
        dup = SnapshotNode(id="snapshot-9", name="B")
        roots = self.roots + (SnapshotNode(id="snapshot-8", name="E", children=(dup,)),)
        self.assertEqual(find_snapshot(roots, "B").id, "snapshot-2")

    def test_walk_order_and_depth(self):
        got = [(depth, n.name) for depth, n in walk_snapshots(self.roots)]
        self.assertEqual(got, [(0, "A"), (1, "B"), (2, "C"), (1, "D")])

    def test_from_vim(self):
        node = SnapshotNode.from_vim(snap("snapshot-1", "A", snap("snapshot-2", "B")))
        self.assertEqual(node.id, "snapshot-1")
        self.assertEqual([ch.name for ch in node.children], ["B"])
        self.assertIsNotNone(node.ref)


class TestInventoryHelpers(unittest.TestCase):
    def test_inventory_path(self):
        inv = Inventory()
        self.assertEqual(inventory_path(inv.host), "/DC1/host/Cluster1/esx01")
        self.assertEqual(inventory_path(inv.cluster), "/DC1/host/Cluster1")

    def test_inventory_path_unnamed_element(self):
        inv = Inventory()
        inv.cluster.name = ""
        self.assertIsNone(inventory_path(inv.host))

    def test_moref(self):
        self.assertEqual(moref(SimpleNamespace(_moId="vm-1")), "vm-1")
        with self.assertRaises(ResolutionIncompleteError):
            moref(SimpleNamespace())


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class TestSnapshotDiskInfo(unittest.TestCase):
    def test_web01_pre_upgrade(self):
        inv = web01_inventory()
        info = inv.resolver().get_snapshot_disk_info("web01", "pre-upgrade")
        self.assertEqual(info.vm_id, "vm-42")
        self.assertEqual(info.snapshot_id, "snapshot-5")
        self.assertEqual(info.disk_paths, ("[ds1] web01/web01-000004.vmdk",))
        self.assertEqual(info.base_disk_paths, ("[ds1] web01/web01.vmdk",))
        self.assertEqual(info.compute_resource_path, "/DC1/host/Cluster1/esx01")
        self.assertEqual(info.datacenter, "DC1")
        self.assertEqual(inv.views.created, inv.views.destroyed)

    def test_to_dict(self):
        info = web01_inventory().resolver().get_snapshot_disk_info("web01", "pre-upgrade")
        d = info.to_dict()
        self.assertEqual(d["base_disk_paths"], ["[ds1] web01/web01.vmdk"])
        self.assertEqual(d["snapshot_name"], "pre-upgrade")

    def test_parent_backing_preferred_over_derivation(self):
        inv = Inventory()
        inv.add_vm(
            "db01",
            "vm-7",
            [
                disk(2000, flat("[ds1] db01/db01-000002.vmdk", parent="[ds2] golden/base.vmdk")),
                disk(2001, flat("[ds1] db01/db01_1-000002.vmdk")),
            ],
            snapshots=[snap("snapshot-1", "s1")],
        )
        info = inv.resolver().get_snapshot_disk_info("db01", "s1")
        self.assertEqual(info.base_disk_paths, ("[ds2] golden/base.vmdk", "[ds1] db01/db01_1.vmdk"))
        self.assertEqual(len(info.disk_paths), len(info.base_disk_paths))

    def test_unsupported_backing_is_skipped_with_warning(self):
        inv = Inventory()
        prdm = Disk.PartitionedRawDiskVer2BackingInfo(descriptorFileName="[ds1] x/x.vmdk", deviceName="/dev/sdb")
        inv.add_vm(
            "app01",
            "vm-9",
            [disk(2000, prdm), disk(2001, flat("[ds1] app01/app01-000001.vmdk"))],
            snapshots=[snap("snapshot-1", "s1")],
        )
        with self.assertLogs(LOG, level="WARNING") as logs:
            info = inv.resolver().get_snapshot_disk_info("app01", "s1")
        self.assertEqual(info.disk_paths, ("[ds1] app01/app01-000001.vmdk",))
        self.assertTrue(any("unsupported backing" in line for line in logs.output))

    def test_only_unsupported_disks_is_not_found(self):
        inv = Inventory()
        prdm = Disk.PartitionedRawDiskVer2BackingInfo(descriptorFileName="[ds1] x/x.vmdk", deviceName="/dev/sdb")
        inv.add_vm("app02", "vm-10", [disk(2000, prdm)], snapshots=[snap("snapshot-1", "s1")])
        with self.assertLogs(LOG, level="WARNING"):
            with self.assertRaises(NotFoundError) as cm:
                inv.resolver().get_snapshot_disk_info("app02", "s1")
        self.assertEqual(cm.exception.context["kind"], "disk")

    def test_host_without_name_falls_back_to_parent(self):
        inv = Inventory()
        inv.host.name = ""
        inv.add_vm("web02", "vm-43", [disk(2000, flat("[ds1] web02/web02.vmdk"))], snapshots=[snap("snapshot-1", "s1")])
        info = inv.resolver().get_snapshot_disk_info("web02", "s1")
        self.assertEqual(info.compute_resource_path, "/DC1/host/Cluster1")

    def test_missing_host_is_resolution_incomplete(self):
        inv = Inventory()
        inv.add_vm("web03", "vm-44", [disk(2000, flat("[ds1] web03/web03.vmdk"))], snapshots=[snap("snapshot-1", "s1")], host=None)
        with self.assertRaises(ResolutionIncompleteError):
            inv.resolver().get_snapshot_disk_info("web03", "s1")


class TestLookupFailures(unittest.TestCase):
    def test_vm_without_snapshots(self):
        inv = Inventory()
        inv.add_vm("bare", "vm-1", [disk(2000, flat("[ds1] bare/bare.vmdk"))])
        with self.assertRaises(NoSnapshotsError) as cm:
            inv.resolver().get_snapshot_disk_info("bare", "anything")
        self.assertIsInstance(cm.exception, NotFoundError)
        self.assertEqual(inv.resolver().list_snapshots("bare"), ())

    def test_missing_snapshot(self):
        with self.assertRaises(NotFoundError) as cm:
            web01_inventory().resolver().get_snapshot_disk_info("web01", "post-upgrade")
        self.assertNotIsInstance(cm.exception, NoSnapshotsError)
        self.assertEqual(cm.exception.context["kind"], "snapshot")

    def test_missing_vm(self):
        inv = web01_inventory()
        with self.assertRaises(NotFoundError) as cm:
            inv.resolver().get_snapshot_disk_info("web99", "pre-upgrade")
        self.assertEqual(cm.exception.context["kind"], "vm")
        self.assertEqual(inv.views.created, inv.views.destroyed)

    def test_empty_vm_name(self):
        with self.assertRaises(NotFoundError):
            web01_inventory().resolver().find_vm_by_name("  ")


class TestFindByUuid(unittest.TestCase):
    def test_bios_uuid_first(self):
        inv = web01_inventory()
        vm, dc = inv.resolver().find_vm_by_uuid("4201-vm-42")
        self.assertEqual(vm._moId, "vm-42")
        self.assertEqual(dc.name, "DC1")
        self.assertEqual(inv.search.calls, [("DC1", "4201-vm-42", False)])

    def test_falls_back_to_instance_uuid(self):
        inv = web01_inventory()
        vm, _dc = inv.resolver().find_vm_by_uuid(" 5001-vm-42 ")
        self.assertEqual(vm.name, "web01")
        self.assertEqual([c[2] for c in inv.search.calls], [False, True])

    def test_unknown_uuid(self):
        with self.assertRaises(NotFoundError) as cm:
            web01_inventory().resolver().find_vm_by_uuid("0000")
        self.assertEqual(cm.exception.context["kind"], "vm")
        self.assertEqual(cm.exception.context["uuid"], "0000")


class TestListVms(unittest.TestCase):
    def setUp(self):
        self.inv = Inventory()
        self.inv.add_vm("web02", "vm-2", [], power_state="poweredOff")
        self.inv.add_vm("Web01", "vm-1", [])
        self.inv.add_vm("db01", "vm-3", [], power_state="suspended")

    def test_sorted_by_name(self):
        vms = self.inv.resolver().list_vms()
        self.assertEqual([v.name for v in vms], ["Web01", "db01", "web02"])
        self.assertEqual(vms[0].to_dict(), {"id": "vm-1", "name": "Web01", "uuid": "4201-vm-1", "power_state": "poweredOn"})
        self.assertEqual(self.inv.views.created, self.inv.views.destroyed)

    def test_name_filter_is_case_insensitive_substring(self):
        vms = self.inv.resolver().list_vms(name="WEB")
        self.assertEqual([v.id for v in vms], ["vm-1", "vm-2"])

    def test_power_state_filter(self):
        vms = self.inv.resolver().list_vms(power_state="poweredoff")
        self.assertEqual([v.name for v in vms], ["web02"])
        self.assertEqual(self.inv.resolver().list_vms(name="db", power_state="poweredOn"), [])


class TestVmInfo(unittest.TestCase):
    def build(self):
        inv = web01_inventory()
        vm = inv.vms[0]
        d = vm.config.hardware.device[0]
        d.capacityInKB = 16 * 1024 * 1024
        d.controllerKey = 1000
        d.deviceInfo = vim.Description(label="Hard disk 1", summary="16 GB")
        d.backing.thinProvisioned = True
        nic = vim.vm.device.VirtualVmxnet3(
            key=4000,
            macAddress="00:50:56:aa:bb:cc",
            deviceInfo=vim.Description(label="Network adapter 1", summary="VM Network"),
            backing=vim.vm.device.VirtualEthernetCard.NetworkBackingInfo(deviceName="VM Network"),
            connectable=vim.vm.device.VirtualDevice.ConnectInfo(connected=True),
        )
        vm.config.hardware.device.append(nic)
        vm.config.hardware.numCPU = 4
        vm.config.hardware.memoryMB = 8192
        vm.config.guestId = "rhel9_64Guest"
        vm.guest = SimpleNamespace(guestState="running", hostName="web01.lab", ipAddress="10.0.0.5", toolsStatus="toolsOk")
        vm.snapshot.currentSnapshot = SimpleNamespace(_moId="snapshot-5")
        return inv

    def test_by_name(self):
        info = self.build().resolver().vm_info(vm_name="web01")
        self.assertEqual((info["id"], info["datacenter"], info["power_state"]), ("vm-42", "DC1", "poweredOn"))
        self.assertEqual(info["hardware"]["num_cpu"], 4)
        self.assertEqual(info["guest"]["ip_address"], "10.0.0.5")
        self.assertEqual(info["runtime"]["host"], "/DC1/host/Cluster1/esx01")
        self.assertEqual(len(info["disks"]), 1)
        self.assertEqual(info["disks"][0]["datastore"], "ds1")
        self.assertEqual(info["disks"][0]["label"], "Hard disk 1")
        self.assertIs(info["disks"][0]["thin_provisioned"], True)
        nic = info["network_adapters"][0]
        self.assertEqual((nic["adapter_type"], nic["network_name"], nic["connected"]), ("VirtualVmxnet3", "VM Network", True))
        self.assertEqual(info["snapshots"][0]["name"], "pre-upgrade")
        self.assertTrue(info["snapshots"][0]["current"])

    def test_by_uuid(self):
        info = self.build().resolver().vm_info(uuid="4201-vm-42")
        self.assertEqual(info["name"], "web01")
        self.assertEqual(info["instance_uuid"], "5001-vm-42")

    def test_needs_name_or_uuid(self):
        with self.assertRaises(NotFoundError):
            web01_inventory().resolver().vm_info()

    def test_datastore_of(self):
        self.assertEqual(datastore_of("[san-01] a/b.vmdk"), "san-01")
        self.assertIsNone(datastore_of("a/b.vmdk"))


class TestDatacenterChoice(unittest.TestCase):
    def test_single_datacenter(self):
        inv = Inventory()
        self.assertIs(inv.resolver().default_datacenter(), inv.dcs[0])

    def test_configured_datacenter(self):
        inv = Inventory(dc_names=("DC1", "DC2"))
        self.assertEqual(inv.resolver(datacenter="DC2").default_datacenter().name, "DC2")

    def test_configured_datacenter_missing(self):
        inv = Inventory()
        with self.assertRaises(NotFoundError) as cm:
            inv.resolver(datacenter="Lab").default_datacenter()
        self.assertEqual(cm.exception.context["kind"], "datacenter")

    def test_multiple_datacenters_guess_is_logged(self):
        inv = Inventory(dc_names=("West", "East"))
        with self.assertLogs(LOG, level="WARNING"):
            dc = inv.resolver().default_datacenter()
        self.assertEqual(dc.name, "East")

    def test_ha_datacenter_preferred(self):
        inv = Inventory(dc_names=("West", "ha-datacenter"))
        with self.assertLogs(LOG, level="WARNING"):
            dc = inv.resolver().default_datacenter()
        self.assertEqual(dc.name, "ha-datacenter")


class TestVmDiskInfo(unittest.TestCase):
    def test_current_state_has_no_snapshot(self):
        inv = Inventory()
        inv.add_vm("clone01", "vm-100", [disk(2000, flat("[ds1] clone01/clone01-000001.vmdk", parent="[ds1] web01/web01.vmdk"))])
        info = inv.resolver().get_vm_disk_info("clone01")
        self.assertIsNone(info.snapshot_id)
        self.assertEqual(info.base_disk_paths, info.disk_paths)


if __name__ == "__main__":
    unittest.main()
