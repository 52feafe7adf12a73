"""Unit tests for the captcha challenge store (in-memory backend)."""

import base64

import pytest

from chatguard.service.challenge import (
    CHALLENGE_ALPHABET,
    CONFUSABLE_CHARS,
    ChallengeStore,
)
from chatguard.service.errors import ChallengeExpiredError, ChallengeMismatchError


@pytest.fixture
def store(clock):
    return ChallengeStore(clock=clock)


def _answer(store: ChallengeStore, session_id: str) -> str:
    return store._records[session_id].expected_answer


class TestIssue:
    async def test_issue_returns_png_data_uri(self, store):
        issued = await store.issue()

        assert issued.session_id.startswith("captcha_")
        prefix = "data:image/png;base64,"
        assert issued.image.startswith(prefix)
        raw = base64.b64decode(issued.image[len(prefix):])
        assert raw[:8] == b"\x89PNG\r\n\x1a\n"

    async def test_answer_has_fixed_length(self, clock):
        store = ChallengeStore(clock=clock, length=6)
        for _ in range(25):
            issued = await store.issue()
            answer = _answer(store, issued.session_id)
            assert len(answer) == 6
            assert not set(answer) & set("01")

    def test_alphabet_excludes_confusables(self):
        assert not set(CHALLENGE_ALPHABET) & set(CONFUSABLE_CHARS)
        assert "L" in CHALLENGE_ALPHABET

    async def test_each_issue_gets_distinct_session(self, store):
        first = await store.issue()
        second = await store.issue()

        assert first.session_id != second.session_id
        assert store.pending() == 2

    async def test_expiry_is_five_minutes_out(self, store, clock):
        issued = await store.issue()
        assert (issued.expires_at - clock()).total_seconds() == 300


class TestVerify:
    async def test_correct_answer_accepted_once(self, store):
        issued = await store.issue()
        answer = _answer(store, issued.session_id)

        assert await store.verify(issued.session_id, answer) is True
        assert await store.verify(issued.session_id, answer) is False

    async def test_answer_comparison_ignores_case(self, store):
        issued = await store.issue()
        answer = _answer(store, issued.session_id)

        assert await store.verify(issued.session_id, answer.upper()) is True

    async def test_wrong_answer_consumes_record(self, store):
        issued = await store.issue()
        answer = _answer(store, issued.session_id)

        assert await store.verify(issued.session_id, "nope") is False
        assert await store.verify(issued.session_id, answer) is False
        assert store.pending() == 0

    async def test_expired_challenge_rejected_and_removed(self, store, clock):
        issued = await store.issue()
        answer = _answer(store, issued.session_id)
        clock.advance(minutes=5, seconds=1)

        assert await store.verify(issued.session_id, answer) is False
        assert store.pending() == 0

    async def test_challenge_valid_at_exact_expiry(self, store, clock):
        issued = await store.issue()
        answer = _answer(store, issued.session_id)
        clock.advance(minutes=5)

        assert await store.verify(issued.session_id, answer) is True

    async def test_missing_arguments_leave_record_untouched(self, store):
        issued = await store.issue()

        assert await store.verify(issued.session_id, "") is False
        assert await store.verify("", "abcd") is False
        assert await store.verify(None, None) is False
        assert store.pending() == 1

    async def test_unknown_session_rejected(self, store):
        assert await store.verify("captcha_unknown", "abcd") is False


class TestCheck:
    async def test_unknown_session_raises_expired(self, store):
        with pytest.raises(ChallengeExpiredError):
            await store.check("captcha_unknown", "abcd")

    async def test_wrong_answer_raises_mismatch(self, store):
        issued = await store.issue()
        with pytest.raises(ChallengeMismatchError) as excinfo:
            await store.check(issued.session_id, "zzzz")
        assert excinfo.value.status_code == 400
        assert excinfo.value.error_code == "challenge_mismatch"

    async def test_expired_raises_expired(self, store, clock):
        issued = await store.issue()
        answer = _answer(store, issued.session_id)
        clock.advance(minutes=10)

        with pytest.raises(ChallengeExpiredError):
            await store.check(issued.session_id, answer)


class TestSweep:
    async def test_sweep_removes_only_expired(self, store, clock):
        old = await store.issue()
        clock.advance(minutes=4)
        fresh = await store.issue()
        clock.advance(minutes=2)

        removed = await store.sweep()

        assert removed == 1
        assert old.session_id not in store._records
        assert fresh.session_id in store._records

    async def test_sweep_is_idempotent(self, store, clock):
        await store.issue()
        clock.advance(minutes=6)

        assert await store.sweep() == 1
        assert await store.sweep() == 0
