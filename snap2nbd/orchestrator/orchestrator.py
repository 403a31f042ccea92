from __future__ import annotations

import argparse
import concurrent.futures
import logging
import os
import shlex
from typing import Any, Callable, Dict, List, Optional, Sequence

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from ..config.config_loader import Config
from ..config.settings import ExportSettings, VMwareSettings
from ..core.context import CallContext
from ..core.exceptions import Fatal
from ..core.utils import U
from ..vmware.disk_resolver import DiskResolver, SnapshotDiskInfo, walk_snapshots
from ..vmware.lifecycle import VMLifecycle
from ..vmware.nbdkit_session import ExportSession, ExportTarget, NBDKitExporter
from ..vmware.session import SessionManager

HOLD_POLL = 1.0
MAX_OPEN_WORKERS = 4


class Orchestrator:
    """
    Command dispatcher behind the CLI.

    This is the only place that picks between the two ways of reaching a
    snapshot's disks:
      - export:        VDDK opens the snapshot directly (cheap, no inventory change)
      - clone-export:  linked clone from the snapshot, export the clone, delete it
    """

    def __init__(self, logger: logging.Logger, args: argparse.Namespace, conf: Optional[Dict[str, Any]] = None):
        self.logger = logger
        self.args = args
        self.conf = conf or {}
        self.ctx = CallContext()
        self._session: Optional[SessionManager] = None

    def cancel(self) -> None:
        self.ctx.cancel()

    # ---------------------------
    # Wiring
    # ---------------------------

    def _settings_source(self) -> Dict[str, Any]:
        explicit = {k: v for k, v in vars(self.args).items() if v is not None}
        return Config.merge_dicts(self.conf, explicit)

    @property
    def session(self) -> SessionManager:
        if self._session is None:
            self._session = SessionManager(VMwareSettings.from_mapping(self._settings_source()), self.logger)
        return self._session

    @property
    def resolver(self) -> DiskResolver:
        return DiskResolver(self.session, self.logger)

    @property
    def lifecycle(self) -> VMLifecycle:
        return VMLifecycle(self.resolver, self.logger, task_timeout=getattr(self.args, "task_timeout", None))

    @property
    def exporter(self) -> NBDKitExporter:
        return NBDKitExporter(ExportSettings.from_mapping(self._settings_source()), self.logger)

    # ---------------------------
    # Entry
    # ---------------------------

    def run(self) -> int:
        if getattr(self.args, "dump_config", False):
            print(U.json_dump(Config.redacted(self.conf)))
            return 0
        if getattr(self.args, "dump_args", False):
            print(U.json_dump(Config.redacted(vars(self.args))))
            return 0

        handlers: Dict[str, Callable[[], int]] = {
            "health": self.cmd_health,
            "list-vms": self.cmd_list_vms,
            "vm-info": self.cmd_vm_info,
            "snapshots": self.cmd_snapshots,
            "resolve": self.cmd_resolve,
            "export": self.cmd_export,
            "create-snapshot": self.cmd_create_snapshot,
            "clone": self.cmd_clone,
            "delete-vm": self.cmd_delete_vm,
            "clone-export": self.cmd_clone_export,
        }
        handler = handlers.get(self.args.cmd)
        if handler is None:
            raise Fatal(2, f"Unknown command: {self.args.cmd}")
        if self.args.cmd == "delete-vm" and not self.args.yes:
            raise Fatal(2, f"Refusing to delete VM {self.args.vm_name!r} without --yes")
        if self.args.cmd == "vm-info" and not (getattr(self.args, "vm_name", None) or getattr(self.args, "uuid", None)):
            raise Fatal(2, "vm-info needs --vm or --uuid")

        U.banner(self.logger, f"Mode: {self.args.cmd}")
        try:
            self.session.connect(self.ctx)
            return handler()
        finally:
            if self._session is not None:
                self._session.disconnect()

    # ---------------------------
    # Read-only commands
    # ---------------------------

    def cmd_health(self) -> int:
        info = self.session.health_check(self.ctx)
        print(U.json_dump({
            "vcenter": self.session.settings.host,
            "user": info.user,
            "login_time": info.login_time,
        }))
        return 0

    def cmd_snapshots(self) -> int:
        roots = self.resolver.list_snapshots(self.args.vm_name, self.ctx)
        rows = [
            {"depth": depth, "id": n.id, "name": n.name, "created": n.create_time, "state": n.state,
             "quiesced": n.quiesced, "description": n.description}
            for depth, n in walk_snapshots(roots)
        ]
        if self.args.json:
            print(U.json_dump(rows))
            return 0
        if not rows:
            self.logger.info(f"VM {self.args.vm_name!r} has no snapshots")
            return 0
        for r in rows:
            print(f"{'  ' * r['depth']}{r['name']}  [{r['id']}]  {r['created'] or ''}")
        return 0

    def cmd_list_vms(self) -> int:
        vms = self.resolver.list_vms(
            self.ctx,
            name=getattr(self.args, "name_filter", None),
            power_state=getattr(self.args, "power_state", None),
        )
        if self.args.json:
            print(U.json_dump([v.to_dict() for v in vms]))
            return 0
        if not vms:
            self.logger.info("No VMs matched")
            return 0
        width = max(len(v.name) for v in vms)
        for v in vms:
            print(f"{v.name:<{width}}  {v.power_state:<10}  {v.uuid}  [{v.id}]")
        return 0

    def cmd_vm_info(self) -> int:
        info = self.resolver.vm_info(
            self.ctx,
            vm_name=getattr(self.args, "vm_name", None),
            uuid=getattr(self.args, "uuid", None),
        )
        print(U.json_dump(info))
        return 0

    def cmd_resolve(self) -> int:
        info = self.resolver.get_snapshot_disk_info(self.args.vm_name, self.args.snapshot_name, self.ctx)
        print(U.json_dump(info.to_dict()))
        return 0

    # ---------------------------
    # Lifecycle commands
    # ---------------------------

    def cmd_create_snapshot(self) -> int:
        snap_id = self.lifecycle.create_snapshot(
            self.args.vm_name,
            self.args.snapshot_name,
            description=self.args.description,
            memory=self.args.memory,
            quiesce=self.args.quiesce,
            ctx=self.ctx,
        )
        print(snap_id)
        return 0

    def cmd_clone(self) -> int:
        clone_id = self.lifecycle.create_linked_clone(self.args.vm_name, self.args.snapshot_name, self.args.clone_name, self.ctx)
        print(clone_id)
        return 0

    def cmd_delete_vm(self) -> int:
        self.lifecycle.delete_vm(self.args.vm_name, self.ctx)
        return 0

    # ---------------------------
    # Export commands
    # ---------------------------

    def cmd_export(self) -> int:
        info = self.resolver.get_snapshot_disk_info(self.args.vm_name, self.args.snapshot_name, self.ctx)
        return self.export_disks(info)

    def cmd_clone_export(self) -> int:
        with self.lifecycle.clone_from_snapshot(
            self.args.vm_name, self.args.snapshot_name, self.ctx, clone_name=self.args.clone_name
        ) as info:
            return self.export_disks(info)

    def _targets(self, info: SnapshotDiskInfo) -> List[ExportTarget]:
        n = len(info.base_disk_paths)
        indices = self.args.disk_index or list(range(n))
        bad = [i for i in indices if i < 0 or i >= n]
        if bad:
            raise Fatal(2, f"Disk index out of range: {bad} (VM has {n} disk(s))")
        return [ExportTarget(info.vm_id, info.snapshot_id, info.base_disk_paths[i]) for i in indices]

    def open_exports(self, targets: Sequence[ExportTarget]) -> List[ExportSession]:
        """
        Open all exports in parallel. All-or-nothing: if any fails, the ones
        that came up are closed and the first error is raised.
        """
        exporter = self.exporter
        details = self.session.connection_details()
        results: List[Optional[ExportSession]] = [None] * len(targets)
        errors: List[BaseException] = []
        max_workers = max(1, min(MAX_OPEN_WORKERS, len(targets)))

        with Progress(SpinnerColumn(), TextColumn("{task.description}"), TimeElapsedColumn(), transient=True) as progress:
            task = progress.add_task(f"Starting {len(targets)} nbdkit export(s)", total=len(targets))
            with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="export-open") as executor:
                futures = {executor.submit(exporter.open, t, details, self.ctx): idx for idx, t in enumerate(targets)}
                for future in concurrent.futures.as_completed(futures):
                    idx = futures[future]
                    try:
                        results[idx] = future.result()
                    except Exception as e:
                        self.logger.error(f"Export of disk {targets[idx].disk_path} failed: {e}")
                        errors.append(e)
                        self.ctx.cancel()
                    progress.update(task, advance=1)

        opened = [s for s in results if s is not None]
        if errors:
            for s in opened:
                s.close()
            raise errors[0]
        return opened

    @staticmethod
    def exec_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Environment for --exec: VDDK libraries dropped from LD_LIBRARY_PATH."""
        env = dict(os.environ if environ is None else environ)
        ld = env.get("LD_LIBRARY_PATH", "")
        keep = [p for p in ld.split(os.pathsep) if p and "vmware-vix-disklib" not in p]
        if keep:
            env["LD_LIBRARY_PATH"] = os.pathsep.join(keep)
        else:
            env.pop("LD_LIBRARY_PATH", None)
        return env

    @staticmethod
    def render_exec(template: str, urls: Sequence[str]) -> str:
        quoted = [shlex.quote(u) for u in urls]
        return template.replace("{urls}", " ".join(quoted)).replace("{url}", quoted[0] if quoted else "")

    def _hold(self, sessions: Sequence[ExportSession]) -> int:
        self.logger.info("Exports ready; press Ctrl+C to stop")
        while True:
            dead = [s for s in sessions if not s.is_alive()]
            if dead:
                for s in dead:
                    self.logger.error(f"nbdkit export {s.label} exited (rc={s.returncode}):\n{s.output()}")
                return 1
            self.ctx.sleep(HOLD_POLL, "export")

    def export_disks(self, info: SnapshotDiskInfo) -> int:
        targets = self._targets(info)
        sessions = self.open_exports(targets)
        try:
            for t, s in zip(targets, sessions):
                print(f"{t.disk_path}\t{s.url}", flush=True)
            template = getattr(self.args, "exec_cmd", None)
            if not template:
                return self._hold(sessions)
            cmd = self.render_exec(template, [s.url for s in sessions])
            cp = U.run_cmd(self.logger, ["sh", "-c", cmd], check=False, env=self.exec_env())
            if cp.returncode != 0:
                self.logger.error(f"--exec command exited with rc={cp.returncode}")
            return cp.returncode
        finally:
            for s in sessions:
                s.close()
