from __future__ import annotations

import json

from backend.core.business import get_business_settings
from tools.operate import kill_switch


def test_apply_kill_switch_roundtrip(engine, seed):
    seed.business()

    on = kill_switch.apply_kill_switch(engine=engine, user_id="user-1", active=True, reason="bad template")
    assert on["found"] is True
    assert on["kill_switch"] is True
    assert get_business_settings(engine, "user-1").notifications_enabled is False

    kill_switch.apply_kill_switch(engine=engine, user_id="user-1", active=False, reason="")
    assert get_business_settings(engine, "user-1").notifications_enabled is True


def test_kill_switch_keeps_other_switches(engine, seed):
    seed.business(feature_kill_switches={"recovery_dispatch": True})

    kill_switch.apply_kill_switch(engine=engine, user_id="user-1", active=True, reason="")

    assert get_business_settings(engine, "user-1").kill_switches == {"recovery_dispatch": True, "notifications": True}


def test_cli(engine, seed, monkeypatch, capsys):
    seed.business()
    monkeypatch.setattr(kill_switch, "get_engine", lambda: engine)

    assert kill_switch.main(["--user", "user-1", "--reason", "provider incident"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert json.loads(out[0])["kill_switch"] is True
    assert out[1] == "KILL SWITCH ON for user-1 - reason=provider incident"

    assert kill_switch.main(["--user", "user-1", "--off"]) == 0
    assert capsys.readouterr().out.splitlines()[1] == "KILL SWITCH OFF for user-1 - reason=-"


def test_cli_unknown_business(engine, monkeypatch, capsys):
    monkeypatch.setattr(kill_switch, "get_engine", lambda: engine)

    assert kill_switch.main(["--user", "ghost"]) == 2
    assert "unknown business ghost" in capsys.readouterr().err
