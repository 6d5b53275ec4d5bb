"""
Raz - Ratchet tests.

Created by orpheus497

Tests for chain advancement, the wire codec and history replay.
"""

import json
from dataclasses import dataclass

import pytest

from raz import crypto
from raz.constants import DECRYPTION_FAILED_PLACEHOLDER
from raz.errors import AuthenticationFailed, InvalidKeyMaterial, RatchetDesync
from raz.ratchet import (
    RatchetState,
    SenderRatchetTable,
    decrypt_with_ratchet,
    encrypt_with_ratchet,
    parse_payload,
    ratchet_forward,
    replay_sender,
)


@dataclass
class StoredMessage:
    id: str
    ciphertext: str
    iv: str
    step: int


def make_chain(root_key: bytes, texts):
    """Encrypt texts in order the way a sender would."""
    key = root_key
    messages = []
    for step, text in enumerate(texts):
        payload, key = encrypt_with_ratchet(text, key, step)
        messages.append(StoredMessage(f"m{step}", payload.ciphertext, payload.iv, payload.step))
    return messages, key


@pytest.fixture
def root_key() -> bytes:
    return crypto.derive_sender_root_key("room-secret", "sender-token")


def test_ratchet_forward_is_deterministic(root_key):
    iv = bytes(12)

    assert ratchet_forward(root_key, iv) == ratchet_forward(root_key, iv)
    assert ratchet_forward(root_key, iv) != root_key
    assert len(ratchet_forward(root_key, iv)) == 32


def test_ratchet_forward_depends_on_nonce(root_key):
    assert ratchet_forward(root_key, bytes(12)) != ratchet_forward(root_key, b"\x01" * 12)


def test_ratchet_forward_validates_lengths(root_key):
    with pytest.raises(InvalidKeyMaterial):
        ratchet_forward(b"short", bytes(12))
    with pytest.raises(InvalidKeyMaterial):
        ratchet_forward(root_key, bytes(8))


def test_encrypt_with_ratchet_roundtrip(root_key):
    payload, next_key = encrypt_with_ratchet("hello", root_key, 0)

    assert payload.step == 0
    assert next_key == ratchet_forward(root_key, crypto.decode_base64(payload.iv))
    assert decrypt_with_ratchet(payload.ciphertext, payload.iv, root_key) == "hello"


def test_next_key_cannot_decrypt_previous_message(root_key):
    """Later keys never open earlier messages."""
    payload, next_key = encrypt_with_ratchet("hello", root_key, 0)

    with pytest.raises(AuthenticationFailed):
        decrypt_with_ratchet(payload.ciphertext, payload.iv, next_key)


def test_ratchet_state_advance(root_key):
    state = RatchetState(key=root_key)
    iv = bytes(12)

    state.advance(iv)

    assert state.step == 1


def test_decrypt_next_takes_only_expected_step(root_key):
    messages, _ = make_chain(root_key, ["one", "two"])
    state = RatchetState(key=root_key)

    with pytest.raises(RatchetDesync) as excinfo:
        state.decrypt_next(messages[1])
    assert excinfo.value.details == {"expected": 0, "step": 1}
    assert state.step == 0
    assert state.key == root_key

    assert state.decrypt_next(messages[0]) == "one"
    assert state.decrypt_next(messages[1]) == "two"
    assert state.step == 2


def test_decrypt_next_leaves_state_on_tampered_message(root_key):
    messages, _ = make_chain(root_key, ["one"])
    tampered = StoredMessage("m0", messages[0].ciphertext, crypto.encode_base64(bytes(12)), 0)
    state = RatchetState(key=root_key)

    with pytest.raises(AuthenticationFailed):
        state.decrypt_next(tampered)
    assert state.step == 0
    assert state.key == root_key
    assert state.key == ratchet_forward(root_key, iv)


def test_sender_ratchet_table(root_key):
    table = SenderRatchetTable()

    state = table.ensure("alice", root_key)
    assert "alice" in table
    assert table.expected_step("alice") == 0
    assert table.ensure("alice", b"\x00" * 32) is state

    state.advance(bytes(12))
    assert table.expected_step("alice") == 1

    table.reset("alice")
    assert "alice" not in table
    assert table.expected_step("alice") is None

    table.ensure("bob", root_key)
    table.clear()
    assert len(table) == 0


def test_replay_decrypts_full_history(root_key):
    messages, final_key = make_chain(root_key, ["one", "two", "three"])

    result = replay_sender(root_key, messages)

    assert result.plaintexts == {"m0": "one", "m1": "two", "m2": "three"}
    assert result.failed == []
    assert result.state.step == 3
    assert result.state.key == final_key


def test_replay_sorts_by_step(root_key):
    messages, final_key = make_chain(root_key, ["one", "two", "three"])

    result = replay_sender(root_key, list(reversed(messages)))

    assert result.plaintexts["m0"] == "one"
    assert result.plaintexts["m2"] == "three"
    assert result.state.key == final_key


def test_replay_recovers_after_corrupt_message(root_key):
    """A failed decrypt gets a placeholder and later messages still open."""
    messages, _ = make_chain(root_key, ["one", "two", "three"])
    messages[1].ciphertext = crypto.encode_base64(b"\x00" * 40)

    result = replay_sender(root_key, messages)

    assert result.plaintexts["m1"] == DECRYPTION_FAILED_PLACEHOLDER
    assert result.failed == ["m1"]
    assert result.plaintexts["m0"] == "one"
    assert result.plaintexts["m2"] == "three"


def test_replay_adopts_step_gap(root_key, caplog):
    """A step gap is logged and the message's own step adopted."""
    messages, _ = make_chain(root_key, ["one", "two"])
    messages[1].step = 5

    with caplog.at_level("WARNING", logger="raz.ratchet"):
        result = replay_sender(root_key, messages)

    assert result.state.step == 6
    assert result.plaintexts["m1"] == "two"
    assert any("desync" in record.getMessage() for record in caplog.records)


def test_replay_reports_sender_name(root_key):
    envelope = json.dumps({"sender": "alice", "text": "hi", "clientTimestamp": 0})
    messages, _ = make_chain(root_key, [envelope])

    result = replay_sender(root_key, messages)

    assert result.sender_name == "alice"


def test_replay_of_nothing(root_key):
    result = replay_sender(root_key, [])

    assert result.plaintexts == {}
    assert result.state == RatchetState(key=root_key, step=0)


def test_parse_payload():
    envelope = json.dumps({"sender": "alice", "text": "hi", "clientTimestamp": 1})

    assert parse_payload(envelope) == ("alice", "hi")
    assert parse_payload("plain text") == (None, "plain text")
    assert parse_payload("[1, 2]") == (None, "[1, 2]")
