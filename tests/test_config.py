import json
import unittest
from pathlib import Path

from lab_provisioner.config import AppConfig, TransportConfig, load_config, resolve_credentials
from lab_provisioner.dispatch import ConnectionFactory, HostSpec
from lab_provisioner.local import VagrantSession
from lab_provisioner.ssh import SSHSession


class ConfigTests(unittest.TestCase):
    def test_defaults_without_file(self) -> None:
        config = load_config(environ={})
        self.assertIsInstance(config, AppConfig)
        self.assertGreaterEqual(config.orchestrator.concurrency, 1)
        self.assertEqual(config.retry.max_attempts, 5)

    def test_loads_custom_config(self) -> None:
        temp_file = Path("tests/tmp_config.json")
        temp_file.write_text(json.dumps({
            "orchestrator": {"concurrency": 2, "_comment": "ignored"},
            "retry": {"max_attempts": 7},
            "transport": {"default_transport": "local"},
        }))
        try:
            config = load_config(str(temp_file), environ={})
            self.assertEqual(config.orchestrator.concurrency, 2)
            self.assertEqual(config.retry.max_attempts, 7)
            self.assertEqual(config.retry.initial_delay, 10.0)
            self.assertEqual(config.transport.default_transport, "local")
        finally:
            temp_file.unlink(missing_ok=True)

    def test_missing_explicit_path_is_an_error(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_config("tests/does_not_exist.json", environ={})

    def test_malformed_config_raises_value_error(self) -> None:
        temp_file = Path("tests/tmp_bad_config.json")
        for content in ("{not json", json.dumps({"orchestrator": {"workers": 2}}), "[]"):
            temp_file.write_text(content)
            try:
                with self.assertRaises(ValueError):
                    load_config(str(temp_file), environ={})
            finally:
                temp_file.unlink(missing_ok=True)

    def test_env_overrides_file_values(self) -> None:
        config = load_config(environ={
            "LAB_PROVISIONER_CONCURRENCY": "9",
            "LAB_PROVISIONER_LOG_DIR": "/tmp/runs",
            "LAB_PROVISIONER_SSH_KEY_PATH": "/keys/lab",
            "LAB_PROVISIONER_VAGRANT_DIR": "/labs/vagrant",
        })
        self.assertEqual(config.orchestrator.concurrency, 9)
        self.assertEqual(config.orchestrator.log_dir, "/tmp/runs")
        self.assertEqual(config.transport.default_auth_method, "key")
        self.assertEqual(config.transport.vagrant_dir, "/labs/vagrant")


class CredentialResolutionTests(unittest.TestCase):
    def test_named_credential_comes_from_env(self) -> None:
        transport = TransportConfig(default_username="vagrant", default_password="vagrant", default_auth_method="password")
        creds = resolve_credentials("lab-admin", transport, environ={
            "LAB_PROVISIONER_CRED_LAB_ADMIN_USERNAME": "LAB\\Administrator",
            "LAB_PROVISIONER_CRED_LAB_ADMIN_PASSWORD": "P@ssw0rd!",
        })
        self.assertEqual(creds.username, "LAB\\Administrator")
        self.assertEqual(creds.password, "P@ssw0rd!")
        self.assertEqual(creds.auth_method, "password")

    def test_falls_back_to_transport_defaults(self) -> None:
        transport = TransportConfig(default_username="vagrant", default_key_path="/k", default_auth_method="key")
        creds = resolve_credentials("unknown", transport, environ={})
        self.assertEqual(creds.username, "vagrant")
        self.assertEqual(creds.key_path, "/k")


class ConnectionFactoryTests(unittest.TestCase):
    def test_builds_session_per_transport(self) -> None:
        transport = TransportConfig(default_username="vagrant", default_password="vagrant",
                                    default_auth_method="password", vagrant_dir="/labs")
        factory = ConnectionFactory(transport, environ={})

        ssh = factory.build_session(HostSpec("dc01", "192.168.56.10", port=2222))
        self.assertIsInstance(ssh, SSHSession)
        self.assertEqual(ssh.credentials.port, 2222)

        vagrant = factory.build_session(HostSpec("dc01", "dc01", transport="vagrant"))
        self.assertIsInstance(vagrant, VagrantSession)
        self.assertEqual(vagrant._build_args("hostname")[:4], ["vagrant", "winrm", "dc01", "-c"])
        self.assertEqual(vagrant.working_dir, "/labs")

    def test_missing_credentials_are_reported(self) -> None:
        factory = ConnectionFactory(TransportConfig(), environ={})
        with self.assertRaises(ValueError):
            factory.build_session(HostSpec("dc01", "192.168.56.10"))

    def test_unknown_transport_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            HostSpec("dc01", "dc01", transport="telnet")


if __name__ == "__main__":
    unittest.main()
