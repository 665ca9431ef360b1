"""
Runtime configuration tests - environment defaults and validated updates.
"""

from config import RuntimeConfig


class TestEnvironmentDefaults:
    def test_defaults(self, monkeypatch):
        for key in ("AGENT_MAX_STEPS", "APPROVAL_TIMEOUT", "APPROVAL_TIMEOUT_POLICY", "RAG_TOP_K"):
            monkeypatch.delenv(key, raising=False)
        config = RuntimeConfig()

        assert config.agent_max_steps == 15
        assert config.approval_timeout == 30.0
        assert config.approval_timeout_policy == "reject"
        assert config.rag_top_k == 5
        assert config.rag_min_score == 0.5

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AGENT_MAX_STEPS", "8")
        monkeypatch.setenv("APPROVAL_TIMEOUT_POLICY", " Approve ")
        monkeypatch.setenv("LLM_CHAT_MODEL", "gpt-4o-mini")
        config = RuntimeConfig()

        assert config.agent_max_steps == 8
        assert config.approval_timeout_policy == "approve"
        assert config.model_chat == "gpt-4o-mini"

    def test_unknown_policy_falls_back(self, monkeypatch):
        monkeypatch.setenv("APPROVAL_TIMEOUT_POLICY", "sometimes")
        assert RuntimeConfig().approval_timeout_policy == "reject"

    def test_blank_credentials_are_unset(self, monkeypatch):
        monkeypatch.setenv("QDRANT_URL", "   ")
        assert RuntimeConfig().qdrant_url == ""


class TestUpdate:
    def test_valid_update(self):
        config = RuntimeConfig()
        result = config.update(agent_max_steps=10, temperature=0.2)
        assert sorted(result["updated"]) == ["agent_max_steps", "temperature"]
        assert config.agent_max_steps == 10

    def test_out_of_range_ignored(self):
        config = RuntimeConfig()
        result = config.update(agent_max_steps=0, rag_min_score=1.5)
        assert sorted(result["ignored"]) == ["agent_max_steps", "rag_min_score"]
        assert config.agent_max_steps != 0

    def test_unknown_and_private_keys_ignored(self):
        config = RuntimeConfig()
        result = config.update(no_such_key=1, _lock=None)
        assert sorted(result["ignored"]) == ["_lock", "no_such_key"]

    def test_policy_update_validated(self):
        config = RuntimeConfig()
        assert config.update(approval_timeout_policy="APPROVE")["updated"] == ["approval_timeout_policy"]
        assert config.approval_timeout_policy == "approve"
        assert config.update(approval_timeout_policy="never")["ignored"] == ["approval_timeout_policy"]

    def test_to_dict_hides_credentials(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
        data = RuntimeConfig().to_dict()
        assert data["llm_api_key"] is True
        assert "sk-secret" not in str(data)
        assert "_VALIDATION_RANGES" not in data
