from storefront_chat.core import settings as settings_module
from storefront_chat.core.settings import DEFAULT_HANDOFF_RISK_WEIGHTS, get_settings, load_settings, reset_settings


def test_defaults():
    settings = load_settings()

    assert settings.product_threshold == 0.38
    assert settings.min_exchanges == 3
    assert settings.needs_score_override_turn == 5
    assert settings.handoff_risk_weights == DEFAULT_HANDOFF_RISK_WEIGHTS
    assert settings.embed_batch_size == 100


def test_env_overrides_and_json_weights(monkeypatch):
    monkeypatch.setenv("SC_PRODUCT_THRESHOLD", "0.5")
    monkeypatch.setenv("SC_MIN_EXCHANGES", "2")
    monkeypatch.setenv("SC_HANDOFF_RISK_WEIGHTS_JSON", '{"low_confidence": 5, "unknown": 9}')
    monkeypatch.setenv("SC_QUALITY_DELTAS_JSON", '{"abandoned": -20}')

    settings = load_settings()

    assert settings.product_threshold == 0.5
    assert settings.min_exchanges == 2
    assert settings.handoff_risk_weights["low_confidence"] == 5
    assert "unknown" not in settings.handoff_risk_weights
    assert settings.quality_deltas["abandoned"] == -20
    assert settings.quality_deltas["base_score"] == 50


def test_invalid_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("SC_CARD_CAP", "many")
    monkeypatch.setenv("SC_HANDOFF_RISK_WEIGHTS_JSON", "{not json")
    monkeypatch.setenv("SC_EMBED_BATCH_SIZE", "1000")

    settings = load_settings()

    assert settings.card_cap == 3
    assert settings.handoff_risk_weights == DEFAULT_HANDOFF_RISK_WEIGHTS
    assert settings.embed_batch_size == 100


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("SC_PAGE_CAP", "4")
    reset_settings()
    assert get_settings().page_cap == 4

    monkeypatch.delenv("SC_PAGE_CAP")
    reset_settings()
    assert settings_module.get_settings().page_cap == 2
