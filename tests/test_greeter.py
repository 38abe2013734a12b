from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import sys

import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from facegreet.config import GreeterConfig, SpeechConfig, ThrottleConfig
from facegreet.errors import NotificationError
from facegreet.face.matcher import Empty, Invalid, Recognized, Unrecognized
from facegreet.notify import sinks
from facegreet.notify.greeter import Greeter
from facegreet.notify.sinks import LogSink, SpeechSink
from facegreet.notify.throttle import CooldownThrottle


class _RecordingSink(sinks.NotificationSink):
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def notify(self, identity: str, text: str) -> None:
        if self.fail:
            raise NotificationError("speaker unplugged")
        self.sent.append((identity, text))


def _greeter(sink=None, cooldown: float = 10.0, **config) -> Greeter:
    return Greeter(
        CooldownThrottle(ThrottleConfig(cooldown_seconds=cooldown)),
        sink if sink is not None else _RecordingSink(),
        GreeterConfig(**config),
    )


def test_greets_once_per_cooldown():
    sink = _RecordingSink()
    g = _greeter(sink)
    assert g.greet("Alice", now=0.0)
    assert not g.greet("Alice", now=5.0)
    assert g.greet("Bob", now=5.0)
    assert g.greet("Alice", now=10.0)
    assert sink.sent == [("Alice", "Bonjour Alice"), ("Bob", "Bonjour Bob"), ("Alice", "Bonjour Alice")]


@pytest.mark.parametrize("identity", ["Unknown", "Error", "", None])
def test_sentinels_and_empty_names_are_ignored(identity):
    sink = _RecordingSink()
    g = _greeter(sink)
    assert not g.greet(identity, now=0.0)
    assert sink.sent == []
    assert len(g.throttle) == 0


def test_custom_sentinels():
    sink = _RecordingSink()
    g = Greeter(CooldownThrottle(), sink, sentinels=("Inconnu", "Erreur"))
    assert not g.greet("Inconnu", now=0.0)
    assert g.greet("Unknown", now=0.0)


def test_disabled_greeter_stays_silent_and_keeps_no_state():
    sink = _RecordingSink()
    g = _greeter(sink, enabled=False)
    assert not g.enabled
    assert not g.greet("Alice", now=0.0)
    assert sink.sent == []
    assert g.throttle.last_notified("Alice") is None

    g.set_enabled(True)
    assert g.greet("Alice", now=1.0)


def test_failed_delivery_is_not_recorded():
    sink = _RecordingSink(fail=True)
    g = _greeter(sink)
    assert not g.greet("Alice", now=0.0)
    assert g.throttle.last_notified("Alice") is None

    sink.fail = False
    assert g.greet("Alice", now=1.0)
    assert g.throttle.last_notified("Alice") == 1.0


def test_unexpected_sink_error_is_contained():
    class _Broken(sinks.NotificationSink):
        def notify(self, identity, text):
            raise RuntimeError("boom")

    g = _greeter(_Broken())
    assert not g.greet("Alice", now=0.0)
    assert g.throttle.last_notified("Alice") is None


def test_greet_verdict_only_acts_on_recognized():
    sink = _RecordingSink()
    g = _greeter(sink)
    assert not g.greet_verdict(Unrecognized(0.2), now=0.0)
    assert not g.greet_verdict(Empty(), now=0.0)
    assert not g.greet_verdict(Invalid("bad"), now=0.0)
    assert g.greet_verdict(Recognized("Alice", 0.9), now=0.0)
    assert sink.sent == [("Alice", "Bonjour Alice")]


def test_custom_template():
    sink = _RecordingSink()
    g = _greeter(sink, template="Hello, {name}!")
    assert g.greeting("Zoë") == "Hello, Zoë!"
    g.greet("Zoë", now=0.0)
    assert sink.sent == [("Zoë", "Hello, Zoë!")]


def test_default_greeter_logs(caplog):
    g = Greeter()
    assert isinstance(g.sink, LogSink)
    with caplog.at_level("INFO"):
        assert g.greet("Alice")
    assert "[SAY] Bonjour Alice" in caplog.text


class _FakeTTS:
    calls = []

    def __init__(self, text, lang):
        self.text = text
        self.lang = lang
        _FakeTTS.calls.append((text, lang))

    def save(self, path):
        Path(path).write_bytes(b"ID3fake")


@pytest.fixture
def fake_tts(monkeypatch):
    _FakeTTS.calls = []
    monkeypatch.setattr(sinks, "gTTS", _FakeTTS)
    return _FakeTTS


def test_speech_sink_caches_audio_and_plays(tmp_path, monkeypatch, fake_tts):
    played = []

    def fake_run(cmd, **kwargs):
        played.append(cmd)
        return SimpleNamespace(returncode=0, stderr="")

    monkeypatch.setattr(sinks.subprocess, "run", fake_run)
    sink = SpeechSink(SpeechConfig(lang="fr", cache_dir=str(tmp_path / "tts"), player=("player", "-q")))

    sink.notify("Alice", "Bonjour Alice")
    sink.notify("Alice", "Bonjour Alice")

    assert fake_tts.calls == [("Bonjour Alice", "fr")]
    assert len(played) == 2
    assert played[0][:2] == ["player", "-q"]
    audio = Path(played[0][-1])
    assert audio.is_file() and audio.suffix == ".mp3"
    assert [p.name for p in (tmp_path / "tts").iterdir()] == [audio.name]


def test_speech_cache_key_depends_on_language(tmp_path, fake_tts):
    fr = SpeechSink(SpeechConfig(lang="fr", cache_dir=str(tmp_path)))
    en = SpeechSink(SpeechConfig(lang="en", cache_dir=str(tmp_path)))
    assert fr.audio_path("Hello") != en.audio_path("Hello")
    assert len(fake_tts.calls) == 2


def test_player_failure_raises_notification_error(tmp_path, monkeypatch, fake_tts):
    monkeypatch.setattr(
        sinks.subprocess, "run", lambda cmd, **kw: SimpleNamespace(returncode=1, stderr="no audio device")
    )
    sink = SpeechSink(SpeechConfig(cache_dir=str(tmp_path)))
    with pytest.raises(NotificationError, match="no audio device"):
        sink.notify("Alice", "Bonjour Alice")


def test_missing_player_raises_notification_error(tmp_path, monkeypatch, fake_tts):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(sinks.subprocess, "run", missing)
    sink = SpeechSink(SpeechConfig(cache_dir=str(tmp_path)))
    with pytest.raises(NotificationError):
        sink.notify("Alice", "Bonjour Alice")


def test_synthesis_failure_raises_and_leaves_no_partial_file(tmp_path, monkeypatch):
    class _OfflineTTS:
        def __init__(self, text, lang):
            pass

        def save(self, path):
            Path(path).write_bytes(b"partial")
            raise ConnectionError("offline")

    monkeypatch.setattr(sinks, "gTTS", _OfflineTTS)
    sink = SpeechSink(SpeechConfig(cache_dir=str(tmp_path)))
    with pytest.raises(NotificationError, match="offline"):
        sink.notify("Alice", "Bonjour Alice")
    assert list(tmp_path.iterdir()) == []


def test_greeter_does_not_record_when_speech_fails(tmp_path, monkeypatch, fake_tts):
    monkeypatch.setattr(sinks.subprocess, "run", lambda cmd, **kw: SimpleNamespace(returncode=1, stderr=""))
    g = Greeter(CooldownThrottle(), SpeechSink(SpeechConfig(cache_dir=str(tmp_path))))
    assert not g.greet("Alice", now=0.0)
    assert g.throttle.last_notified("Alice") is None
