import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from config.manager import EnvironmentManager, load_migrator_config
from config.types import MigratorConfig


class TestEnvironmentManager(unittest.TestCase):
    """Test cases for the EnvironmentManager class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.env_file = Path(self.temp_dir) / ".env"

        # Only the temporary .env file is ever probed
        self.candidates_patch = mock.patch.object(
            EnvironmentManager, "_env_file_candidates", return_value=[self.env_file]
        )
        self.candidates_patch.start()
        self.environ_patch = mock.patch.dict(os.environ, {}, clear=True)
        self.environ_patch.start()

        # Create a new instance for each test to avoid singleton issues
        EnvironmentManager._instance = None
        self.env_manager = EnvironmentManager()

    def tearDown(self):
        """Clean up after tests."""
        self.environ_patch.stop()
        self.candidates_patch.stop()
        EnvironmentManager._instance = None
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def create_env_file(self, content):
        """Write the temporary .env file with the given content."""
        self.env_file.write_text(content)
        return self.env_file

    def test_defaults(self):
        """Defaults are loaded for every known setting."""
        settings = self.env_manager.settings
        self.assertEqual(settings["data_dir"], ".migrator")
        self.assertEqual(settings["rclone_path"], "rclone")
        self.assertEqual(settings["rclone_transfers"], 8)
        self.assertEqual(settings["b2_bucket_name"], "onedrive-migrations")
        self.assertEqual(settings["max_concurrent_jobs"], 2)
        self.assertTrue(settings["rclone_show_progress"])
        self.assertIsNone(settings["manifest_dir"])

    def test_singleton_pattern(self):
        """EnvironmentManager follows the singleton pattern."""
        self.assertIs(EnvironmentManager(), EnvironmentManager())

    def test_parse_env_file(self):
        """Values from a .env file are converted to their setting types."""
        env_file = self.create_env_file(
            """
            # Migration settings
            RCLONE_PATH=/opt/rclone/rclone
            RCLONE_TRANSFERS=16
            RCLONE_SHOW_PROGRESS=false
            STOP_GRACE_SECONDS=2.5
            B2_BUCKET_NAME="team migrations"
            MS_CLIENT_ID='client-123'
            UNRELATED_VARIABLE=kept
            """
        )

        self.env_manager._parse_env_file(env_file)

        settings = self.env_manager.settings
        self.assertEqual(settings["rclone_path"], "/opt/rclone/rclone")
        self.assertEqual(settings["rclone_transfers"], 16)
        self.assertFalse(settings["rclone_show_progress"])
        self.assertEqual(settings["stop_grace_seconds"], 2.5)
        self.assertEqual(settings["b2_bucket_name"], "team migrations")
        self.assertEqual(settings["ms_client_id"], "client-123")
        self.assertEqual(self.env_manager.env_variables["UNRELATED_VARIABLE"], "kept")

    def test_invalid_value_is_ignored(self):
        """A value that cannot be converted keeps the previous setting."""
        with self.assertLogs("config.manager", level="WARNING"):
            self.env_manager._apply_variable("RCLONE_TRANSFERS", "many")
        self.assertEqual(self.env_manager.settings["rclone_transfers"], 8)

    def test_os_environment_overrides_env_file(self):
        """The OS environment wins over the .env file."""
        self.create_env_file("MAX_CONCURRENT_JOBS=3\nADMISSION_QUEUE_SIZE=7\n")

        with mock.patch.dict(os.environ, {"MAX_CONCURRENT_JOBS": "5"}):
            self.env_manager.load()

        self.assertEqual(self.env_manager.settings["max_concurrent_jobs"], 5)
        self.assertEqual(self.env_manager.settings["admission_queue_size"], 7)

    def test_register_provider(self):
        """Provider settings override known settings only."""
        provider = mock.Mock(return_value={"settings": {"log_tail_lines": 50, "unknown": 1}})

        self.env_manager.register_provider(provider)
        self.env_manager.load()

        provider.assert_called_once()
        self.assertEqual(self.env_manager.settings["log_tail_lines"], 50)
        self.assertNotIn("unknown", self.env_manager.settings)

    def test_provider_exception_handling(self):
        """Exceptions from providers are logged, not raised."""

        def failing_provider():
            raise Exception("Provider failure test")

        self.env_manager.register_provider(failing_provider)

        try:
            self.env_manager.load()
        except Exception:
            self.fail("load() raised an exception from a failing provider")

    def test_paths_are_resolved(self):
        """Relative path settings become absolute on load."""
        with mock.patch.dict(os.environ, {"DATA_DIR": "relative/data"}):
            self.env_manager.load()

        data_dir = self.env_manager.settings["data_dir"]
        self.assertTrue(os.path.isabs(data_dir))
        self.assertTrue(data_dir.endswith(os.path.join("relative", "data")))

    def test_get_setting_default(self):
        """None-valued settings fall back to the given default."""
        self.assertEqual(self.env_manager.get_setting("manifest_dir", "/fallback"), "/fallback")
        self.assertEqual(self.env_manager.get_setting("rclone_path", "/fallback"), "rclone")
        self.env_manager.set_setting("manifest_dir", "/explicit")
        self.assertEqual(self.env_manager.get_setting("manifest_dir"), "/explicit")

    def test_migrator_config_derives_paths_from_data_dir(self):
        """Storage paths default to locations under data_dir."""
        self.env_manager.set_setting("data_dir", "/srv/migrator")

        config = self.env_manager.get_migrator_config()

        self.assertIsInstance(config, MigratorConfig)
        self.assertEqual(config.manifest_dir, str(Path("/srv/migrator") / "manifests"))
        self.assertEqual(config.credential_store_path, str(Path("/srv/migrator") / "tokens.json"))
        self.assertEqual(config.registry.log_dir, str(Path("/srv/migrator") / "logs"))

    def test_migrator_config_maps_settings(self):
        """Flat settings land in the nested configuration models."""
        self.create_env_file(
            "\n".join(
                [
                    "MS_TENANT_ID=contoso",
                    "MS_CLIENT_ID=cid",
                    "MS_CLIENT_SECRET=csecret",
                    "B2_APPLICATION_KEY_ID=kid",
                    "B2_APPLICATION_KEY=ksecret",
                    "MAX_CONCURRENT_JOBS=4",
                    "JOB_TIMEOUT_SECONDS=600",
                    "TOKEN_SAFETY_MARGIN_SECONDS=120",
                    "JOB_TTL_SECONDS=900",
                ]
            )
        )

        config = self.env_manager.load().get_migrator_config()

        self.assertEqual(
            config.credentials.token_url,
            "https://login.microsoftonline.com/contoso/oauth2/v2.0/token",
        )
        self.assertEqual(config.credentials.client_id, "cid")
        self.assertEqual(config.credentials.safety_margin_seconds, 120)
        self.assertEqual(config.transfer.client_secret, "csecret")
        self.assertEqual(config.transfer.destination_account, "kid")
        self.assertEqual(config.transfer.destination_key, "ksecret")
        self.assertEqual(config.supervisor.max_concurrent_processes, 4)
        self.assertEqual(config.supervisor.max_job_duration_seconds, 600)
        self.assertEqual(config.registry.job_ttl_seconds, 900)
        self.assertEqual(config.registry.cleanup_interval_seconds, 300)

    def test_explicit_token_url_wins(self):
        """TOKEN_URL overrides the tenant derived endpoint."""
        with mock.patch.dict(os.environ, {"TOKEN_URL": "https://idp.example.test/token"}):
            config = self.env_manager.load().get_migrator_config()
        self.assertEqual(config.credentials.token_url, "https://idp.example.test/token")

    def test_load_migrator_config_uses_singleton(self):
        """The module helper loads the shared instance."""
        manager = EnvironmentManager()
        with mock.patch("config.manager.env_manager", manager):
            with mock.patch.dict(os.environ, {"RCLONE_RETRIES": "9"}):
                config = load_migrator_config()
        self.assertEqual(config.transfer.retries, 9)


if __name__ == "__main__":
    unittest.main()
