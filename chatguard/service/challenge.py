from __future__ import annotations

import base64
import hmac
import io
import secrets
import string
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from PIL import Image, ImageDraw, ImageFont

from chatguard.logging import get_logger
from chatguard.service.errors import ChallengeExpiredError, ChallengeMismatchError
from chatguard.storage.models import ChallengeRecord
from chatguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Clock = Callable[[], datetime]

# Glyphs that read alike in a noisy image are left out
CONFUSABLE_CHARS = "0Oo1Iil"
CHALLENGE_ALPHABET = "".join(
    ch for ch in string.ascii_letters + string.digits if ch not in CONFUSABLE_CHARS
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fold(answer: str) -> str:
    return answer.strip().casefold()


@dataclass(frozen=True)
class IssuedChallenge:
    session_id: str
    image: str
    expires_at: datetime


def render_challenge(
    text: str,
    *,
    width: int = 120,
    height: int = 40,
    noise_lines: int = 2,
    rng: Optional[secrets.SystemRandom] = None,
) -> str:
    """Draw ``text`` onto a PNG and return it as a ``data:`` URI."""

    rng = rng or secrets.SystemRandom()
    image = Image.new("RGB", (width, height), (rng.randint(225, 255),) * 3)
    draw = ImageDraw.Draw(image)
    font = ImageFont.load_default(size=max(12, int(height * 0.65)))

    for _ in range(noise_lines):
        draw.line(
            [
                (rng.randint(0, width), rng.randint(0, height)),
                (rng.randint(0, width), rng.randint(0, height)),
            ],
            fill=(rng.randint(80, 200), rng.randint(80, 200), rng.randint(80, 200)),
            width=1,
        )

    slot = width / (len(text) + 1)
    for index, glyph in enumerate(text):
        x = slot * (index + 0.5) + rng.uniform(-2, 2)
        y = rng.uniform(0, max(1, height * 0.2))
        color = (rng.randint(0, 140), rng.randint(0, 140), rng.randint(0, 140))
        draw.text((x, y), glyph, fill=color, font=font)

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


class ChallengeStore:
    """Issues human-verification challenges and judges each answer once.

    Records live in Redis when a cache is configured (GETDEL keeps the
    single-use rule atomic across workers), otherwise in a lock-guarded dict.
    Every verification attempt consumes the record, right or wrong.
    """

    def __init__(
        self,
        *,
        cache: Optional[RedisCache] = None,
        length: int = 4,
        ttl_seconds: int = 300,
        width: int = 120,
        height: int = 40,
        noise_lines: int = 2,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cache = cache
        self.length = length
        self.ttl = timedelta(seconds=ttl_seconds)
        self.width = width
        self.height = height
        self.noise_lines = noise_lines
        self._clock = clock or _utcnow
        self._rng = secrets.SystemRandom()
        self._lock = threading.Lock()
        self._records: Dict[str, ChallengeRecord] = {}

    def _new_answer(self) -> str:
        return "".join(secrets.choice(CHALLENGE_ALPHABET) for _ in range(self.length))

    async def issue(self) -> IssuedChallenge:
        now = self._clock()
        answer = self._new_answer()
        session_id = f"captcha_{secrets.token_urlsafe(18)}"
        record = ChallengeRecord(
            session_id=session_id,
            expected_answer=_fold(answer),
            expires_at=now + self.ttl,
        )
        if self.cache:
            await self.cache.set_challenge(
                session_id, record.expected_answer, record.expires_at, now
            )
        else:
            with self._lock:
                self._records[session_id] = record
        image = render_challenge(
            answer,
            width=self.width,
            height=self.height,
            noise_lines=self.noise_lines,
            rng=self._rng,
        )
        logger.info("challenge_issued", session_id=session_id)
        return IssuedChallenge(
            session_id=session_id, image=image, expires_at=record.expires_at
        )

    async def _take(self, session_id: str) -> Optional[ChallengeRecord]:
        if self.cache:
            cached = await self.cache.pop_challenge(session_id)
            if cached is None:
                return None
            expected, expires_at = cached
            return ChallengeRecord(
                session_id=session_id, expected_answer=expected, expires_at=expires_at
            )
        with self._lock:
            return self._records.pop(session_id, None)

    async def check(self, session_id: Optional[str], answer: Optional[str]) -> None:
        """Judge ``answer`` for ``session_id``, raising on any failure.

        Missing arguments fail without touching the stored record. An unknown
        or expired session raises :class:`ChallengeExpiredError`, a wrong
        answer raises :class:`ChallengeMismatchError`.
        """
        if not session_id:
            raise ChallengeExpiredError()
        if not answer or not answer.strip():
            raise ChallengeMismatchError()

        record = await self._take(session_id)
        if record is None:
            logger.info("challenge_missing", session_id=session_id)
            raise ChallengeExpiredError()
        if record.is_expired(self._clock()):
            logger.info("challenge_expired", session_id=session_id)
            raise ChallengeExpiredError()
        if not hmac.compare_digest(
            _fold(answer).encode(), record.expected_answer.encode()
        ):
            logger.info("challenge_mismatch", session_id=session_id)
            raise ChallengeMismatchError()

    async def verify(self, session_id: Optional[str], answer: Optional[str]) -> bool:
        try:
            await self.check(session_id, answer)
        except (ChallengeExpiredError, ChallengeMismatchError):
            return False
        return True

    async def sweep(self) -> int:
        """Drop expired in-memory records; Redis expires its own keys."""

        if self.cache:
            return 0
        now = self._clock()
        with self._lock:
            expired = [
                sid for sid, record in self._records.items() if record.expires_at < now
            ]
        removed = 0
        for sid in expired:
            with self._lock:
                record = self._records.get(sid)
                if record is not None and record.expires_at < now:
                    del self._records[sid]
                    removed += 1
        if removed:
            logger.info("challenge_sweep", removed=removed)
        return removed

    def pending(self) -> int:
        with self._lock:
            return len(self._records)
