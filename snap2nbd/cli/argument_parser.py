from __future__ import annotations
import argparse

from ..core.logger import c
from ..config.config_loader import Config, ENV_PREFIX
from ..config.settings import THUMBPRINT_DIGESTS, MAX_RETRY_ATTEMPTS
from .. import __version__

YAML_EXAMPLE = r"""# snap2nbd config
# Run:
# snap2nbd --config vc.yaml export --vm web01 --snapshot pre-upgrade
# or merge configs:
# snap2nbd --config base.yaml --config site.yaml resolve --vm web01 --snapshot pre-upgrade
#
# Every key can also come from the environment: SNAP2NBD_<KEY>, e.g.
# SNAP2NBD_VC_PASSWORD=... SNAP2NBD_RETRY_ATTEMPTS=5
# Precedence: command line > environment > config files > built-in defaults.
vcenter_url: https://vcenter.example.com/sdk
vc_user: administrator@vsphere.local
vc_password_env: VC_PASSWORD      # or vc_password: ...
vc_insecure: false
datacenter: DC1                   # optional when the inventory has one datacenter
connection_timeout: 30
request_timeout: 60
retry_attempts: 3                 # 0..10, total attempts = retry_attempts + 1
retry_delay: 5
# export (nbdkit + VDDK)
nbdkit_path: nbdkit
vddk_libdir: /opt/vmware-vix-disklib-distrib
socket_dir: /run/snap2nbd
ready_timeout: 30
thumbprint_digest: sha1           # sha1 | sha256
# transports: nbdssl
"""


POWER_STATES = ("poweredOn", "poweredOff", "suspended")


class CLI:
    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        epilog = (
            c("YAML example:\n", "cyan", ["bold"]) +
            c(YAML_EXAMPLE, "cyan") +
            "\n" +
            c("Feature summary:\n", "cyan", ["bold"]) +
            c(" • Session: login retry budget, liveness probe, transparent reconnect\n", "cyan") +
            c(" • Inventory: list-vms with name / power-state filters, vm-info by name or UUID\n", "cyan") +
            c(" • Resolve: VM + snapshot -> MoRefs, delta chain base paths, compute resource path\n", "cyan") +
            c(" • Export: read-only nbdkit/VDDK export per disk on a private unix socket\n", "cyan") +
            c(" • Lifecycle: create snapshot, linked clone from snapshot, delete VM\n", "cyan") +
            c(" • Hand-off: --exec runs your tool with {url} / {urls} substituted\n", "cyan")
        )
        p = argparse.ArgumentParser(
            prog="snap2nbd",
            description=c("snap2nbd: vSphere snapshot disks as local read-only NBD exports", "green", ["bold"]),
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog=epilog,
        )
        p.add_argument("--config", action="append", default=[], help="YAML/JSON config file (repeatable; later overrides earlier).")
        p.add_argument("--dump-config", action="store_true", help="Print merged normalized config and exit.")
        p.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
        p.add_argument("--version", action="version", version=__version__)
        p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv")
        p.add_argument("--log-file", default=None, help="Write logs to file.")
        p.add_argument("--log-format", default="text", choices=["text", "json"], help="Log line format.")

        vc = p.add_argument_group("vSphere connection")
        vc.add_argument("--vcenter", dest="vcenter_url", default=None, help="vCenter/ESXi URL or hostname (https://vc/sdk, vc, vc:8443)")
        vc.add_argument("--vc-user", dest="vc_user", default=None, help="vCenter username")
        vc.add_argument("--vc-password", dest="vc_password", default=None, help="vCenter password (or use --vc-password-env)")
        vc.add_argument("--vc-password-env", dest="vc_password_env", default=None, help="Env var containing vCenter password")
        vc.add_argument("--vc-insecure", dest="vc_insecure", action="store_true", help="Disable TLS certificate verification")
        vc.add_argument("--datacenter", default=None, help="Datacenter to search (default: the only one, else a guess)")
        vc.add_argument("--connection-timeout", type=float, default=30.0, help="Seconds for the whole connect/login sequence (default: 30)")
        vc.add_argument("--request-timeout", type=float, default=60.0, help="Per-request socket timeout in seconds (default: 60)")
        vc.add_argument("--retry-attempts", type=int, default=3, choices=range(0, MAX_RETRY_ATTEMPTS + 1), metavar=f"0..{MAX_RETRY_ATTEMPTS}",
                        help="Extra login attempts after the first (default: 3)")
        vc.add_argument("--retry-delay", type=float, default=5.0, help="Seconds between login attempts (default: 5)")

        ex = p.add_argument_group("export (nbdkit + VDDK)")
        ex.add_argument("--nbdkit-path", default="nbdkit", help="nbdkit binary (default: nbdkit on PATH)")
        ex.add_argument("--vddk-libdir", default=None, help="VDDK root (directory holding lib64/); default: $VDDK_LIBDIR or well-known paths")
        ex.add_argument("--socket-dir", default=None, help="Where export sockets are created (default: system temp dir)")
        ex.add_argument("--ready-timeout", type=float, default=30.0, help="Seconds to wait for each export socket (default: 30)")
        ex.add_argument("--thumbprint", default=None, help="Server TLS thumbprint (default: fetched from the server)")
        ex.add_argument("--thumbprint-digest", default="sha1", choices=list(THUMBPRINT_DIGESTS), help="Digest for the fetched thumbprint")
        ex.add_argument("--transports", default=None, help="VDDK transport modes, e.g. nbdssl or hotadd:nbdssl")
        ex.add_argument("--task-timeout", type=float, default=None, help="Seconds to wait for remote tasks (default: no limit)")

        sub = p.add_subparsers(dest="cmd", required=True)

        sub.add_parser("health", help="Connect, verify the session and print who we are")

        pl = sub.add_parser("list-vms", help="List VMs in the datacenter")
        pl.add_argument("--name", dest="name_filter", default=None, help="Case-insensitive name substring filter")
        pl.add_argument("--power-state", dest="power_state", choices=POWER_STATES, default=None,
                        help="Only VMs in this power state")
        pl.add_argument("--json", action="store_true", help="JSON output")

        pvi = sub.add_parser("vm-info", help="Detailed VM description (hardware, guest, disks, NICs, snapshots) as JSON")
        sel = pvi.add_mutually_exclusive_group()
        sel.add_argument("--vm", dest="vm_name", default=None, help="VM name")
        sel.add_argument("--uuid", dest="uuid", default=None, help="BIOS or instance UUID")

        ps = sub.add_parser("snapshots", help="Print a VM's snapshot tree")
        ps.add_argument("--vm", dest="vm_name", required=True, help="VM name")
        ps.add_argument("--json", action="store_true", help="JSON output")

        pr = sub.add_parser("resolve", help="Resolve VM + snapshot to MoRefs, disk paths and compute path (JSON)")
        pr.add_argument("--vm", dest="vm_name", required=True, help="VM name")
        pr.add_argument("--snapshot", dest="snapshot_name", required=True, help="Snapshot name")

        pe = sub.add_parser("export", help="Export a snapshot's disks over NBD until Ctrl+C or --exec finishes")
        pe.add_argument("--vm", dest="vm_name", required=True, help="VM name")
        pe.add_argument("--snapshot", dest="snapshot_name", required=True, help="Snapshot name")
        pe.add_argument("--disk-index", dest="disk_index", type=int, action="append", default=None,
                        help="Export only this disk (0-based, repeatable; default: all disks)")
        pe.add_argument("--exec", dest="exec_cmd", default=None,
                        help="Shell command to run once exports are ready; {url} = first disk, {urls} = all disks")

        pcs = sub.add_parser("create-snapshot", help="Create a snapshot")
        pcs.add_argument("--vm", dest="vm_name", required=True, help="VM name")
        pcs.add_argument("--name", dest="snapshot_name", required=True, help="Snapshot name")
        pcs.add_argument("--description", default="Created by snap2nbd", help="Snapshot description")
        pcs.add_argument("--memory", action="store_true", help="Include memory state")
        pcs.add_argument("--quiesce", action="store_true", help="Quiesce the guest file system (needs VMware Tools)")

        pcl = sub.add_parser("clone", help="Create a powered-off linked clone from a snapshot")
        pcl.add_argument("--vm", dest="vm_name", required=True, help="Source VM name")
        pcl.add_argument("--snapshot", dest="snapshot_name", required=True, help="Snapshot name")
        pcl.add_argument("--clone-name", dest="clone_name", required=True, help="Name of the new VM")

        pd = sub.add_parser("delete-vm", help="Power off and delete a VM (e.g. a leftover clone)")
        pd.add_argument("--vm", dest="vm_name", required=True, help="VM name")
        pd.add_argument("--yes", action="store_true", help="Confirm deletion")

        pce = sub.add_parser("clone-export", help="Linked clone from snapshot, export its disks, delete the clone afterwards")
        pce.add_argument("--vm", dest="vm_name", required=True, help="VM name")
        pce.add_argument("--snapshot", dest="snapshot_name", required=True, help="Snapshot name")
        pce.add_argument("--clone-name", dest="clone_name", default=None, help="Clone name (default: <vm>-inspect-clone-<epoch>)")
        pce.add_argument("--disk-index", dest="disk_index", type=int, action="append", default=None,
                         help="Export only this disk (0-based, repeatable; default: all disks)")
        pce.add_argument("--exec", dest="exec_cmd", default=None,
                         help="Shell command to run once exports are ready; {url} = first disk, {urls} = all disks")

        return p


def parse_args_with_config(argv=None, logger=None, environ=None):
    """Two-phase parse so config files and the environment can satisfy required flags.

    Phase 0: parse ONLY global flags needed to find config/logging (no subcommand/required args)
    Phase 1: load+merge config files, overlay SNAP2NBD_* env, apply as argparse defaults
    Phase 2: full parse_args with defaults applied

    Returns: (args, merged_config_dict, logger)
    """
    parser = CLI.build_parser()

    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    pre.add_argument("--log-format", dest="log_format", default="text")
    args0, _rest = pre.parse_known_args(argv)

    if logger is None:
        from ..core.logger import Log  # local import to avoid cycles
        logger = Log.setup(args0.verbose, args0.log_file, args0.log_format)

    conf = {}
    cfgs = args0.config or []
    if cfgs:
        cfgs = Config.expand_configs(logger, list(cfgs))
        conf = Config.load_many(logger, cfgs)
    env_conf = Config.env_overrides(logger, environ)
    if env_conf:
        logger.debug(f"Applying {len(env_conf)} {ENV_PREFIX}* environment override(s)")
        conf = Config.merge_dicts(conf, env_conf)
    Config.apply_as_defaults(logger, parser, conf)

    args = parser.parse_args(argv)
    return args, conf, logger
