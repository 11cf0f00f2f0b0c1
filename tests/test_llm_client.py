"""Tests for the Gemini wrapper, with the model object faked out."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from src.sales_advisor import llm_client, prompts


class FakeModel:
    def __init__(self, text: str = "ok") -> None:
        self.text = text
        self.requests = []

    def generate_content(self, contents, generation_config=None):
        self.requests.append((contents, generation_config))
        return SimpleNamespace(text=self.text)


@pytest.fixture
def fake_model(monkeypatch: pytest.MonkeyPatch) -> FakeModel:
    model = FakeModel()
    monkeypatch.setattr(llm_client, "_get_model", lambda system_prompt=None: model)
    return model


def test_missing_key_raises_environment_error(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(llm_client, "_configured", False)
    monkeypatch.setattr(llm_client, "_initialization_error", None)

    assert not llm_client.is_configured()
    with pytest.raises(EnvironmentError):
        llm_client.chat_complete("persona", [{"role": "user", "content": "hi"}])


def test_chat_requires_prompt_and_messages(fake_model):
    with pytest.raises(ValueError):
        llm_client.chat_complete("  ", [{"role": "user", "content": "hi"}])
    with pytest.raises(ValueError):
        llm_client.chat_complete("persona", [{"role": "system", "content": "x"}, {"role": "user", "content": " "}])


def test_chat_maps_roles(fake_model):
    reply = llm_client.chat_complete(
        "persona",
        [{"role": "assistant", "content": "说说情况"}, {"role": "user", "content": "见了客户"}],
    )

    assert reply == "ok"
    contents, _ = fake_model.requests[0]
    assert contents == [
        {"role": "model", "parts": ["说说情况"]},
        {"role": "user", "parts": ["见了客户"]},
    ]


def test_chat_drops_oldest_turns_when_too_long(fake_model, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(llm_client, "_MAX_TRANSCRIPT_CHARS", 10)

    llm_client.chat_complete(
        "persona",
        [
            {"role": "user", "content": "aaaaaaaa"},
            {"role": "assistant", "content": "bbbbbb"},
            {"role": "user", "content": "cccc"},
        ],
    )

    contents, _ = fake_model.requests[0]
    assert [c["parts"][0] for c in contents] == ["bbbbbb", "cccc"]


def test_empty_reply_is_an_error(fake_model):
    fake_model.text = ""
    with pytest.raises(RuntimeError):
        llm_client.chat_complete("persona", [{"role": "user", "content": "hi"}])


def test_generate_json_decodes(fake_model):
    fake_model.text = '{"objective": "签约", "keyResults": ["拿到PO"]}'

    result = llm_client.generate_json("制定OKR", prompts.OKRSuggestionSchema)

    assert result == {"objective": "签约", "keyResults": ["拿到PO"]}
    _, config = fake_model.requests[0]
    assert config is not None


def test_generate_json_malformed(fake_model):
    fake_model.text = "not json"
    with pytest.raises(RuntimeError):
        llm_client.generate_json("制定OKR", prompts.OKRSuggestionSchema)


def test_transcribe_sends_inline_audio(fake_model):
    fake_model.text = "今天见了王总"

    assert llm_client.transcribe_audio(b"\x00\x01", "audio/mp4") == "今天见了王总"
    contents, _ = fake_model.requests[0]
    assert contents[0] == {"mime_type": "audio/mp4", "data": b"\x00\x01"}


def test_transcribe_rejects_empty_clip():
    with pytest.raises(ValueError):
        llm_client.transcribe_audio(b"")
