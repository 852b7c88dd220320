from agent_chat.config.env_utils import read_env_file, update_env_values, write_env_file


def test_read_missing_file(tmp_path):
    assert dict(read_env_file(tmp_path / ".env")) == {}


def test_read_skips_comments_and_strips_quotes(tmp_path):
    env = tmp_path / ".env"
    env.write_text('# comment\nAGENT_API_BASE_URL="http://x"\n\nbroken line\nSTREAMING_ENABLED=false\n', encoding="utf-8")
    assert dict(read_env_file(env)) == {"AGENT_API_BASE_URL": "http://x", "STREAMING_ENABLED": "false"}


def test_update_env_values_merges(tmp_path):
    env = tmp_path / "sub" / ".env"
    write_env_file({"AGENT_API_KEY": "old-key-123", "LOG_DIR": "logs"}, env)
    pairs = update_env_values(
        {"agent_api_base_url": "http://agents.local", "streaming_enabled": False, "agent_api_key": None},
        env,
    )
    assert dict(pairs) == {
        "LOG_DIR": "logs",
        "AGENT_API_BASE_URL": "http://agents.local",
        "STREAMING_ENABLED": "false",
    }
    assert dict(read_env_file(env)) == dict(pairs)
