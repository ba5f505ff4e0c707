"""Tests for environment-driven service settings."""

from dqn_service.config import Settings


class TestSettings:

    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CHECKPOINT_DIR", str(tmp_path))
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("OUTCOME_QUEUE_SIZE", "25")
        settings = Settings()
        assert settings.checkpoint_dir == str(tmp_path)
        assert settings.debug is True
        assert settings.outcome_queue_size == 25

    def test_only_storage_setting_is_checkpoint_dir(self):
        fields = set(Settings.model_fields)
        assert "checkpoint_dir" in fields
        assert not {"model_dir", "api_prefix"} & fields

    def test_cpu_device_without_cuda(self, monkeypatch):
        monkeypatch.setenv("USE_CUDA", "false")
        assert Settings().device == "cpu"
