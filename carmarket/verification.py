# carmarket/verification.py
"""Phone ownership proof through short-lived six digit codes.

Per phone the issuer moves between: no code, pending(code, expires_at) and
consumed. Issuing always (re)opens pending and overwrites any earlier code.
A correct confirm before expiry consumes the code; a confirm at or after
expiry clears it whatever was submitted; a wrong code before expiry leaves
the pending code in place. Stores apply that check-and-consume atomically
in `take`, so a code confirms at most once.
"""
import hmac
import re
import secrets
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker
from . import config
from .errors import ValidationError
from .models import VerificationCode
from .sms import SmsSender, LogSmsSender, mask_phone
from .utils import logger, retry, utcnow

_PHONE_RE = re.compile(r"^\+?\d{6,15}$")


def normalize_phone(phone: str) -> str:
    cleaned = re.sub(r"[\s\-().]", "", phone or "")
    if not _PHONE_RE.match(cleaned):
        raise ValidationError("Invalid phone number", ["phone: expected 6-15 digits"])
    return cleaned


def codes_match(expected: str, given: str) -> bool:
    return hmac.compare_digest(expected.encode(), str(given).strip().encode())


@dataclass
class PendingCode:
    code: str
    expires_at: datetime


class CodeStore:
    def get(self, phone: str) -> Optional[PendingCode]:
        raise NotImplementedError

    def set(self, phone: str, pending: PendingCode) -> None:
        raise NotImplementedError

    def delete(self, phone: str) -> None:
        raise NotImplementedError

    def take(self, phone: str, code: str, now: datetime) -> bool:
        """Consume the pending code if it matches and `now` is before expiry.

        Expired codes are removed whatever `code` is. Must be atomic.
        """
        raise NotImplementedError


class InMemoryCodeStore(CodeStore):
    def __init__(self):
        self._codes: Dict[str, PendingCode] = {}
        self._lock = threading.Lock()

    def get(self, phone):
        with self._lock:
            return self._codes.get(phone)

    def set(self, phone, pending):
        with self._lock:
            self._codes[phone] = pending

    def delete(self, phone):
        with self._lock:
            self._codes.pop(phone, None)

    def take(self, phone, code, now):
        with self._lock:
            pending = self._codes.get(phone)
            if pending is None:
                return False
            if now >= pending.expires_at:
                del self._codes[phone]
                return False
            if not codes_match(pending.code, code):
                return False
            del self._codes[phone]
            return True


class SqlCodeStore(CodeStore):
    """Codes kept in the verification_codes table, one row per phone."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, phone):
        with self.session_factory() as db:
            row = db.get(VerificationCode, phone)
            return PendingCode(row.code, row.expires_at) if row else None

    def set(self, phone, pending):
        with self.session_factory() as db:
            row = db.get(VerificationCode, phone)
            if row is None:
                db.add(VerificationCode(phone=phone, code=pending.code, expires_at=pending.expires_at))
            else:
                row.code = pending.code
                row.expires_at = pending.expires_at
                row.created_at = utcnow()
            db.commit()

    def delete(self, phone):
        with self.session_factory() as db:
            db.execute(delete(VerificationCode).where(VerificationCode.phone == phone))
            db.commit()

    def take(self, phone, code, now):
        # the row is gone once one DELETE matches it, so only one caller sees rowcount 1
        with self.session_factory() as db:
            res = db.execute(
                delete(VerificationCode).where(
                    VerificationCode.phone == phone,
                    VerificationCode.code == str(code).strip(),
                    VerificationCode.expires_at > now,
                )
            )
            consumed = res.rowcount == 1
            if not consumed:
                db.execute(
                    delete(VerificationCode).where(
                        VerificationCode.phone == phone,
                        VerificationCode.expires_at <= now,
                    )
                )
            db.commit()
            return consumed


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class VerificationCodeIssuer:
    def __init__(self, store: CodeStore, clock: Callable[[], datetime] = utcnow,
                 sender: Optional[SmsSender] = None, ttl_minutes: Optional[int] = None,
                 code_factory: Callable[[], str] = generate_code,
                 dispatch_tries: int = 3, dispatch_delay: float = 0.5):
        self.store = store
        self.clock = clock
        self.sender = sender or LogSmsSender()
        ttl = config.VERIFICATION_CODE_TTL_MINUTES if ttl_minutes is None else ttl_minutes
        self.ttl = timedelta(minutes=ttl)
        self.code_factory = code_factory
        self.dispatch_tries = dispatch_tries
        self.dispatch_delay = dispatch_delay
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="sms-dispatch")

    def issue(self, phone: str) -> str:
        phone = normalize_phone(phone)
        code = self.code_factory()
        self.store.set(phone, PendingCode(code=code, expires_at=self.clock() + self.ttl))
        self._dispatch(phone, code)
        return code

    def confirm(self, phone: str, code: str) -> bool:
        try:
            phone = normalize_phone(phone)
        except ValidationError:
            return False
        return self.store.take(phone, code, self.clock())

    def shutdown(self, wait: bool = True) -> None:
        """Stop the dispatch pool; with `wait`, pending sends finish first."""
        self._executor.shutdown(wait=wait)

    def _dispatch(self, phone: str, code: str) -> Future:
        return self._executor.submit(self._send, phone, code)

    def _send(self, phone: str, code: str) -> None:
        send = retry(Exception, tries=self.dispatch_tries, delay=self.dispatch_delay)(self.sender.send)
        try:
            send(phone, code)
        except Exception as e:
            logger.error("SMS dispatch to %s failed: %s", mask_phone(phone), e)
