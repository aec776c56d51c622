"""
Unit tests for RiskConfig, ConfigProvider and Settings
"""

from decimal import Decimal

import pytest

from riskcore.config import ConfigProvider, FaultWeights, RiskConfig
from riskcore.validation import PreconditionError
from riskops.config import Settings


class TestRiskConfig:

    def test_defaults(self):
        config = RiskConfig()
        assert config.version == 1
        assert config.weights.as_tuple() == (30, 20, 30, 20)
        assert config.gamma == 80
        assert config.alpha == Decimal("1.0")
        assert config.min_slashing_fi == 30
        assert config.ban_threshold_fi == 85

    def test_alpha_normalized_to_decimal(self):
        config = RiskConfig(alpha=1.5)
        assert config.alpha == Decimal("1.5")
        assert isinstance(config.alpha, Decimal)

    @pytest.mark.parametrize("kwargs", [
        {"gamma": 49},
        {"gamma": 95},
        {"alpha": Decimal("0.4")},
        {"alpha": Decimal("2.1")},
        {"min_slashing_fi": 19},
        {"min_slashing_fi": 51},
        {"ban_threshold_fi": 74},
        {"ban_threshold_fi": 96},
        {"warning_fi": 30},
        {"warning_fi": -1},
        {"version": 0},
    ])
    def test_out_of_bounds_rejected(self, kwargs):
        with pytest.raises(PreconditionError):
            RiskConfig(**kwargs)

    def test_bounds_are_inclusive(self):
        config = RiskConfig(gamma=90, alpha=Decimal("2.0"), min_slashing_fi=50, ban_threshold_fi=95, warning_fi=49)
        assert config.gamma == 90

    def test_immutable(self):
        config = RiskConfig()
        with pytest.raises(Exception):
            config.gamma = 60

    def test_to_dict(self):
        data = RiskConfig().to_dict()
        assert data["alpha"] == "1.0"
        assert data["weights"] == {"limit": 30, "behavior": 20, "damage": 30, "intent": 20}


class TestConfigProvider:

    def test_publish_new_version(self):
        provider = ConfigProvider()
        provider.publish(RiskConfig(version=2, gamma=70))

        assert provider.current().version == 2
        assert provider.get_gamma() == 70
        assert provider.versions() == [1, 2]

    def test_old_versions_stay_replayable(self):
        provider = ConfigProvider()
        provider.publish(RiskConfig(version=2, gamma=70))
        assert provider.get(1).gamma == 80

    def test_version_must_increase(self):
        provider = ConfigProvider(RiskConfig(version=3))
        with pytest.raises(PreconditionError):
            provider.publish(RiskConfig(version=3))
        with pytest.raises(PreconditionError):
            provider.publish(RiskConfig(version=2))

    def test_unknown_version(self):
        with pytest.raises(PreconditionError):
            ConfigProvider().get(99)

    def test_collaborator_getters(self):
        provider = ConfigProvider()
        assert provider.get_weights() == FaultWeights()
        assert provider.get_alpha() == Decimal("1.0")
        assert provider.get_min_slashing_fi() == 30
        assert provider.get_ban_threshold_fi() == 85


class TestSettings:

    def test_genesis_config_from_settings(self):
        settings = Settings(_env_file=None, gamma=70, min_slashing_fi=35)
        config = settings.to_risk_config()

        assert config.version == 1
        assert config.gamma == 70
        assert config.min_slashing_fi == 35

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("TOSS_GAMMA", "60")
        monkeypatch.setenv("TOSS_ALPHA", "1.5")

        settings = Settings(_env_file=None)

        assert settings.gamma == 60
        assert settings.alpha == Decimal("1.5")

    def test_invalid_genesis_rejected(self):
        settings = Settings(_env_file=None, weight_intent=30)
        with pytest.raises(PreconditionError):
            settings.to_risk_config()

    def test_price_cache_config(self):
        settings = Settings(_env_file=None, oracle_max_staleness_seconds=300, oracle_fetch_timeout_seconds=0.2)
        cache_config = settings.to_price_cache_config()
        assert cache_config.max_staleness_seconds == 300
        assert cache_config.fetch_timeout_seconds == 0.2

    def test_properties(self, tmp_path):
        settings = Settings(_env_file=None, environment="production", audit_path=str(tmp_path))
        assert settings.is_production
        assert settings.audit_dir == tmp_path
