"""
Tests: Component Wiring
=======================

Provider chains built from Settings. Nothing is loaded or contacted.

Run with pytest:
    pytest tests/test_components.py -v
"""

from auravoice.config.settings import Settings
from auravoice.pipeline import components
from auravoice.pipeline.components import ComponentManager


def test_reply_chain_follows_provider_preference(monkeypatch):
    monkeypatch.setattr(ComponentManager, "_find_llm_model", lambda self: "")
    settings = Settings()
    settings.llm.groq_api_key = "gsk-test"

    names = [p.name for p in ComponentManager(settings).build_reply_providers()]
    assert names == ["openai", "groq"]

    settings.llm.provider = "groq"
    names = [p.name for p in ComponentManager(settings).build_reply_providers()]
    assert names == ["groq", "openai"]


def test_local_model_goes_last(tmp_path):
    model = tmp_path / "qwen2.5-1.5b-instruct.gguf"
    model.write_bytes(b"")
    settings = Settings()
    settings.llm.model_path = str(model)
    settings.llm.threads = 2

    providers = ComponentManager(settings).build_reply_providers()
    assert providers[-1].name == "local"
    assert providers[-1].config.model_path == str(model)
    assert providers[-1].config.n_threads == 2


def test_speech_chain_order(tmp_path):
    settings = Settings()
    settings.tts.azure_key = "azure-key"
    settings.tts.azure_region = "westus"
    settings.tts.models_dir = str(tmp_path)

    providers = ComponentManager(settings).build_speech_providers()
    assert [p.name for p in providers] == ["azure", "elevenlabs", "piper"]
    assert providers[0].available
    assert providers[0].region == "westus"
    assert not providers[1].available
    assert providers[2].config.models_dir == str(tmp_path)


def test_relative_models_dir_resolves_to_project():
    settings = Settings()
    piper = ComponentManager(settings).build_speech_providers()[-1]
    assert piper.config.models_dir == str(components._project_root / "models" / "tts")


def test_orchestrator_config_from_settings():
    settings = Settings()
    settings.silence.duration_ms = 2000
    settings.silence.restart_delay_ms = 250
    settings.silence.threshold = 0.1

    config = ComponentManager(settings).orchestrator_config()
    assert config.silence_duration_sec == 2.0
    assert config.restart_delay_sec == 0.25
    assert config.silence_threshold == 0.1
