from campus_call.config import IceServer, Settings, load_settings


def test_defaults():
    settings = load_settings({})
    assert settings == Settings()
    assert len(settings.ice_servers) == 1
    assert settings.ice_servers[0].urls[0] == "stun:stun.l.google.com:19302"
    assert settings.ring_timeout == 45.0
    assert settings.match_poll_interval == 3.0


def test_overrides():
    settings = load_settings(
        {
            "DATABASE_URL": "postgresql://u:p@db:5432/calls",
            "STUN_URLS": "stun:a.example:3478, stun:b.example:3478",
            "MATCH_POLL_INTERVAL": "1.5",
            "MATCH_REJOIN_AFTER": "12",
            "RING_TIMEOUT": "30",
            "LOG_LEVEL": "debug",
        }
    )
    assert settings.database_url == "postgresql://u:p@db:5432/calls"
    assert settings.ice_servers == (
        IceServer(urls=("stun:a.example:3478", "stun:b.example:3478")),
    )
    assert settings.match_poll_interval == 1.5
    assert settings.match_rejoin_after == 12.0
    assert settings.ring_timeout == 30.0
    assert settings.log_level == "DEBUG"


def test_turn_server_added_with_credentials():
    settings = load_settings(
        {
            "TURN_URL": "turn:relay.example:3478",
            "TURN_USERNAME": "campus",
            "TURN_CREDENTIAL": "secret",
        }
    )
    assert len(settings.ice_servers) == 2
    turn = settings.ice_servers[1]
    assert turn.urls == ("turn:relay.example:3478",)
    assert turn.username == "campus"
    assert turn.credential == "secret"


def test_blank_turn_url_ignored():
    assert len(load_settings({"TURN_URL": "  "}).ice_servers) == 1
