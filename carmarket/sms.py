# carmarket/sms.py
"""Outbound SMS dispatch.

Real delivery belongs to an external provider; `LogSmsSender` stands in for
it during development by writing the dispatch to the log.
"""
from .utils import logger


class SmsSender:
    def send(self, phone: str, code: str) -> None:
        raise NotImplementedError


class LogSmsSender(SmsSender):
    def send(self, phone: str, code: str) -> None:
        # code is deliberately not logged
        logger.info("SMS verification code dispatched to %s", mask_phone(phone))


def mask_phone(phone: str) -> str:
    if len(phone) <= 4:
        return "*" * len(phone)
    return "*" * (len(phone) - 4) + phone[-4:]
