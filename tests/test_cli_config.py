import logging
import tempfile
import unittest
from pathlib import Path

from snap2nbd.cli.argument_parser import parse_args_with_config
from snap2nbd.config.config_loader import Config
from snap2nbd.core.cred import resolve_vsphere_creds
from snap2nbd.core.exceptions import Fatal

LOG = logging.getLogger("snap2nbd.tests.cli")


class TestCLIConfigTwoPhaseParse(unittest.TestCase):
    def setUp(self):
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.td = Path(td.name)

    def write(self, name, text):
        p = self.td / name
        p.write_text(text, encoding="utf-8")
        return p

    def test_config_satisfies_required_vm(self):
        cfg = self.write("cfg.yaml", "vm_name: web01\nvcenter_url: vc.example.com\n")
        # Would fail if argparse enforced --vm before config defaults are applied.
        args, conf, _logger = parse_args_with_config(
            argv=["--config", str(cfg), "resolve", "--snapshot", "pre-upgrade"], logger=LOG, environ={}
        )
        self.assertEqual(args.vm_name, "web01")
        self.assertEqual(args.snapshot_name, "pre-upgrade")
        self.assertEqual(conf["vcenter_url"], "vc.example.com")

    def test_precedence_cli_env_file(self):
        cfg = self.write("cfg.yaml", "vcenter-url: file.example\nretry_delay: 7\nretry_attempts: 1\n")
        env = {"SNAP2NBD_VCENTER_URL": "env.example", "SNAP2NBD_RETRY_ATTEMPTS": "4", "UNRELATED": "x"}
        args, conf, _ = parse_args_with_config(
            argv=["--config", str(cfg), "--vcenter", "cli.example", "health"], logger=LOG, environ=env
        )
        self.assertEqual(args.vcenter_url, "cli.example")
        self.assertEqual(args.retry_attempts, 4)
        self.assertEqual(args.retry_delay, 7)
        self.assertEqual(conf["vcenter_url"], "env.example")
        self.assertNotIn("unrelated", conf)

    def test_env_alone(self):
        env = {"SNAP2NBD_VCENTER_URL": "env.example", "SNAP2NBD_VC_INSECURE": "yes", "SNAP2NBD_CONNECTION_TIMEOUT": "12.5"}
        args, _conf, _ = parse_args_with_config(argv=["health"], logger=LOG, environ=env)
        self.assertEqual(args.vcenter_url, "env.example")
        self.assertIs(args.vc_insecure, True)
        self.assertEqual(args.connection_timeout, 12.5)

    def test_env_false_flag(self):
        args, _conf, _ = parse_args_with_config(argv=["health"], logger=LOG, environ={"SNAP2NBD_VC_INSECURE": "false"})
        self.assertIs(args.vc_insecure, False)

    def test_env_text_values_are_not_coerced(self):
        env = {"SNAP2NBD_VM_NAME": "yes", "SNAP2NBD_VC_PASSWORD": "1", "SNAP2NBD_VC_USER": "on"}
        args, conf, _ = parse_args_with_config(argv=["snapshots"], logger=LOG, environ=env)
        self.assertEqual(args.vm_name, "yes")
        self.assertEqual(args.vc_password, "1")
        self.assertEqual(args.vc_user, "on")
        self.assertEqual(conf["vc_password"], "1")

    def test_env_flag_rejects_non_boolean(self):
        with self.assertRaises(Fatal) as cm:
            parse_args_with_config(argv=["health"], logger=LOG, environ={"SNAP2NBD_VC_INSECURE": "maybe"})
        self.assertEqual(cm.exception.code, 2)

    def test_list_vms_filters(self):
        args, _conf, _ = parse_args_with_config(
            argv=["list-vms", "--name", "web", "--power-state", "poweredOff"], logger=LOG, environ={}
        )
        self.assertEqual((args.cmd, args.name_filter, args.power_state), ("list-vms", "web", "poweredOff"))
        with self.assertRaises(SystemExit):
            parse_args_with_config(argv=["list-vms", "--power-state", "off"], logger=LOG, environ={})

    def test_vm_info_selectors_are_exclusive(self):
        args, _conf, _ = parse_args_with_config(argv=["vm-info", "--uuid", "4201-1"], logger=LOG, environ={})
        self.assertEqual((args.uuid, args.vm_name), ("4201-1", None))
        with self.assertRaises(SystemExit):
            parse_args_with_config(argv=["vm-info", "--vm", "web01", "--uuid", "4201-1"], logger=LOG, environ={})

    def test_builtin_defaults(self):
        args, conf, _ = parse_args_with_config(argv=["snapshots", "--vm", "web01"], logger=LOG, environ={})
        self.assertEqual(conf, {})
        self.assertEqual(args.retry_attempts, 3)
        self.assertEqual(args.retry_delay, 5.0)
        self.assertEqual(args.thumbprint_digest, "sha1")
        self.assertFalse(args.json)

    def test_retry_attempts_out_of_range_rejected(self):
        with self.assertRaises(SystemExit):
            parse_args_with_config(argv=["--retry-attempts", "11", "health"], logger=LOG, environ={})

    def test_config_directory_is_expanded(self):
        d = self.td / "conf.d"
        d.mkdir()
        (d / "10-base.yaml").write_text("vcenter_url: base.example\nvc_user: admin\n", encoding="utf-8")
        (d / "20-site.json").write_text('{"vcenter_url": "site.example"}', encoding="utf-8")
        (d / "README").write_text("ignored", encoding="utf-8")
        args, conf, _ = parse_args_with_config(argv=["--config", str(d), "health"], logger=LOG, environ={})
        self.assertEqual(args.vcenter_url, "site.example")
        self.assertEqual(args.vc_user, "admin")


class TestConfigHelpers(unittest.TestCase):
    def test_redacted(self):
        red = Config.redacted({"vc_password": "s3cret", "vc_user": "admin", "password": ""})
        self.assertEqual(red, {"vc_password": "***", "vc_user": "admin", "password": ""})

    def test_merge_dicts(self):
        merged = Config.merge_dicts({"a": {"x": 1, "y": 2}, "l": [1]}, {"a": {"y": 3}, "l": [2]})
        self.assertEqual(merged, {"a": {"x": 1, "y": 3}, "l": [2]})

    def test_env_overrides_skips_secret(self):
        out = Config.env_overrides(LOG, {"SNAP2NBD_CONFIG_SECRET": "k", "SNAP2NBD_DATACENTER": "DC1"})
        self.assertEqual(out, {"datacenter": "DC1"})

    def test_env_overrides_keep_strings(self):
        out = Config.env_overrides(LOG, {"SNAP2NBD_VC_PASSWORD": "1", "SNAP2NBD_VC_INSECURE": "off"})
        self.assertEqual(out, {"vc_password": "1", "vc_insecure": "off"})
        creds = resolve_vsphere_creds({"vcenter": "vc", "vc_user": "u", **out})
        self.assertEqual(creds.password, "1")

    def test_parse_bool(self):
        self.assertIs(Config.parse_bool("Yes"), True)
        self.assertIs(Config.parse_bool(" 0 "), False)
        self.assertIs(Config.parse_bool(False), False)
        with self.assertRaises(ValueError):
            Config.parse_bool("maybe")


if __name__ == "__main__":
    unittest.main()
