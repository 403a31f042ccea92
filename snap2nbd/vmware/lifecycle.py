# snap2nbd/vmware/lifecycle.py
# -*- coding: utf-8 -*-
"""
Mutating VM operations: snapshot, linked clone, delete.

Each one is a single remote call plus a task wait. No retries: a task that
ends in the error state is terminal and its fault text is surfaced as-is.
"""
from __future__ import annotations

import contextlib
import logging
import time
from typing import Any, Iterator, Optional

from pyVmomi import vim

from ..core.context import CallContext, background
from ..core.exceptions import Snap2NbdError, TaskError
from .disk_resolver import DiskResolver, SnapshotDiskInfo, moref
from .session import fault_message, remote_call


def wait_for_task(
    task: Any,
    op: str,
    ctx: Optional[CallContext] = None,
    *,
    timeout: Optional[float] = None,
    poll_interval: float = 1.0,
) -> Any:
    """Poll until the task finishes; return task.info.result or raise TaskError."""
    wctx = (ctx or background()).child(timeout)
    while True:
        with remote_call(op):
            info = task.info
            state = info.state
        if state == vim.TaskInfo.State.success:
            return info.result
        if state == vim.TaskInfo.State.error:
            err = info.error
            text = fault_message(err) if err is not None else f"{op} failed"
            raise TaskError(msg=text, cause=err, context={"op": op, "task": getattr(task, "_moId", None)})
        wctx.sleep(poll_interval, op)


class VMLifecycle:
    def __init__(
        self,
        resolver: DiskResolver,
        logger: logging.Logger,
        *,
        task_timeout: Optional[float] = None,
        poll_interval: float = 1.0,
    ):
        self.resolver = resolver
        self.logger = logger
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval

    def _wait(self, task: Any, op: str, ctx: Optional[CallContext]) -> Any:
        self.logger.info("%s: task %s submitted, waiting for completion", op, getattr(task, "_moId", "?"))
        return wait_for_task(task, op, ctx, timeout=self.task_timeout, poll_interval=self.poll_interval)

    def create_snapshot(
        self,
        vm_name: str,
        name: str,
        *,
        description: str = "Created by snap2nbd",
        memory: bool = False,
        quiesce: bool = False,
        ctx: Optional[CallContext] = None,
    ) -> str:
        """Returns the new snapshot's MoRef id."""
        vm_obj = self.resolver.find_vm_by_name(vm_name, ctx)
        self.logger.info("Creating snapshot %r on VM %r (memory=%s, quiesce=%s)", name, vm_name, memory, quiesce)
        with remote_call("create_snapshot", vm=vm_name, snapshot=name):
            task = vm_obj.CreateSnapshot_Task(name=name, description=description, memory=memory, quiesce=quiesce)
        snap = self._wait(task, "create_snapshot", ctx)
        snap_id = moref(snap)
        self.logger.info("Snapshot %r created: %s", name, snap_id)
        return snap_id

    def create_linked_clone(
        self,
        vm_name: str,
        snapshot_name: str,
        clone_name: str,
        ctx: Optional[CallContext] = None,
    ) -> str:
        """Linked clone (child disk backing) of vm_name@snapshot_name, powered off. Returns the clone's MoRef id."""
        vm_obj, dc, node = self.resolver.locate_snapshot(vm_name, snapshot_name, ctx)
        self.logger.info("Creating linked clone %r of %r@%r", clone_name, vm_name, snapshot_name)
        with remote_call("create_linked_clone", vm=vm_name, clone=clone_name):
            spec = vim.vm.CloneSpec(
                location=vim.vm.RelocateSpec(diskMoveType="createNewChildDiskBacking"),
                snapshot=node.ref,
                powerOn=False,
                template=False,
            )
            task = vm_obj.CloneVM_Task(folder=dc.vmFolder, name=clone_name, spec=spec)
        clone = self._wait(task, "create_linked_clone", ctx)
        clone_id = moref(clone)
        self.logger.info("Linked clone %r created: %s", clone_name, clone_id)
        return clone_id

    def delete_vm(self, vm_name: str, ctx: Optional[CallContext] = None) -> None:
        """Power off (if running) and destroy."""
        vm_obj = self.resolver.find_vm_by_name(vm_name, ctx)
        with remote_call("delete_vm", vm=vm_name):
            power = vm_obj.runtime.powerState
        if power == vim.VirtualMachinePowerState.poweredOn:
            self.logger.info("Powering off VM %r before deletion", vm_name)
            with remote_call("power_off", vm=vm_name):
                task = vm_obj.PowerOffVM_Task()
            self._wait(task, "power_off", ctx)
        self.logger.info("Deleting VM %r", vm_name)
        with remote_call("delete_vm", vm=vm_name):
            task = vm_obj.Destroy_Task()
        self._wait(task, "delete_vm", ctx)
        self.logger.info("VM %r deleted", vm_name)

    @contextlib.contextmanager
    def clone_from_snapshot(
        self,
        vm_name: str,
        snapshot_name: str,
        ctx: Optional[CallContext] = None,
        *,
        clone_name: Optional[str] = None,
    ) -> Iterator[SnapshotDiskInfo]:
        """
        Temporary linked clone for inspection. Yields the clone's current disk
        identity; the clone is deleted on exit (a failed delete is logged).
        """
        name = clone_name or f"{vm_name}-inspect-clone-{int(time.time())}"
        self.create_linked_clone(vm_name, snapshot_name, name, ctx)
        try:
            yield self.resolver.get_vm_disk_info(name, ctx)
        finally:
            self.logger.info("Cleaning up inspection clone %r", name)
            try:
                self.delete_vm(name)
            except Snap2NbdError as e:
                self.logger.error("Failed to delete inspection clone %r: %s", name, e)
