"""Tests for the isolation policy."""

import json

import pytest

from repro_harness.errors import ConfigError
from repro_harness.policy import (
    ENV_VARS,
    FEATURE_FLAGS,
    KNOWN_GUARDS,
    NETWORK,
    TELEMETRY,
    GuardSpec,
    HostAllowlist,
    IsolationPolicy,
    NetworkMode,
)


class TestConstructors:
    """Test policy constructors."""

    def test_strict_enables_everything(self):
        policy = IsolationPolicy.strict()
        assert policy.enabled_guards() == list(KNOWN_GUARDS)
        assert policy.network_mode == NetworkMode.BLOCKED

    def test_permissive_disables_everything(self):
        policy = IsolationPolicy.permissive()
        assert policy.enabled_guards() == []
        assert policy.network_mode == NetworkMode.ALLOWED

    def test_from_flags_allowed_network_disables_guard(self):
        policy = IsolationPolicy.from_flags(network=NetworkMode.ALLOWED)
        assert not policy.enabled(NETWORK)
        assert policy.enabled(TELEMETRY)

    def test_from_flags_allow_hosts_is_allowlist(self):
        policy = IsolationPolicy.from_flags(allow_hosts=["pypi.org"])
        assert policy.network_mode == NetworkMode.ALLOWLIST
        assert policy.allow(NETWORK) == {"pypi.org"}

    def test_from_flags_keep_env(self):
        policy = IsolationPolicy.from_flags(keep_env=["CI", "LANG"])
        assert policy.enabled(ENV_VARS)
        assert policy.allow(ENV_VARS) == {"CI", "LANG"}

    def test_from_flags_disabled(self):
        policy = IsolationPolicy.from_flags(disabled=[TELEMETRY])
        assert policy.enabled_guards() == [NETWORK, ENV_VARS, FEATURE_FLAGS]

    def test_from_flags_rejects_unknown(self):
        with pytest.raises(ConfigError, match="Unknown guard"):
            IsolationPolicy.from_flags(disabled=["clock"])

    def test_unknown_guard_rejected(self):
        with pytest.raises(ConfigError, match="clock"):
            IsolationPolicy({"clock": GuardSpec()})


class TestQueries:
    """Test policy queries."""

    def test_missing_guard_is_disabled(self):
        policy = IsolationPolicy({NETWORK: GuardSpec()})
        assert policy.enabled(NETWORK)
        assert not policy.enabled(TELEMETRY)
        assert policy.allow(TELEMETRY) == frozenset()

    def test_enabled_guards_follow_install_order(self):
        policy = IsolationPolicy({TELEMETRY: GuardSpec(), NETWORK: GuardSpec()})
        assert policy.enabled_guards() == [NETWORK, TELEMETRY]

    def test_with_guard_returns_copy(self):
        strict = IsolationPolicy.strict()
        relaxed = strict.with_guard(TELEMETRY, enabled=False)
        assert strict.enabled(TELEMETRY)
        assert not relaxed.enabled(TELEMETRY)

    def test_guards_are_read_only(self):
        policy = IsolationPolicy.strict()
        with pytest.raises(TypeError):
            policy.guards[NETWORK] = GuardSpec(enabled=False)


class TestSerialization:
    """Test policy JSON round trips."""

    def test_json_round_trip(self):
        policy = IsolationPolicy.strict().with_guard(NETWORK, allow=["pypi.org", "*.internal"])
        restored = IsolationPolicy.from_json(policy.to_json())
        assert restored.to_dict() == policy.to_dict()
        assert restored.allow(NETWORK) == {"pypi.org", "*.internal"}

    def test_from_dict_boolean_shorthand(self):
        policy = IsolationPolicy.from_dict({"telemetry": False, "network": {"allow": ["a.com"]}})
        assert not policy.enabled(TELEMETRY)
        assert policy.enabled(NETWORK)
        assert policy.allow(NETWORK) == {"a.com"}

    def test_from_dict_bad_allow(self):
        with pytest.raises(ConfigError, match="must be a list"):
            IsolationPolicy.from_dict({"network": {"allow": "pypi.org"}})

    def test_from_dict_bad_value(self):
        with pytest.raises(ConfigError):
            IsolationPolicy.from_dict({"network": "yes"})

    def test_from_json_invalid(self):
        with pytest.raises(ConfigError, match="not valid JSON"):
            IsolationPolicy.from_json("{nope")

    def test_to_json_is_stable(self):
        data = json.loads(IsolationPolicy.strict().to_json())
        assert list(data) == sorted(data)
        assert data[NETWORK] == {"enabled": True, "allow": []}


class TestHostAllowlist:
    """Test host allow-list matching."""

    def test_exact(self):
        allow = HostAllowlist.of(["PyPI.org"])
        assert allow.matches("pypi.org")
        assert not allow.matches("files.pypi.org")

    def test_wildcard(self):
        allow = HostAllowlist.of(["*.example.com"])
        assert allow.matches("api.example.com")
        assert allow.matches("example.com")
        assert not allow.matches("badexample.com")

    def test_empty_is_falsy(self):
        assert not HostAllowlist.of([" ", ""])
