"""Phone-call escalation via Twilio Programmable Voice.

The proactive scheduler places a call after an urgent check-in message.
The message is spoken with Twilio's <Say> verb using an Amazon Polly voice
matched to the user's language.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any

from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

log = logging.getLogger(__name__)

POLLY_VOICES = {
    "en": "Polly.Joanna",
    "ru": "Polly.Tatyana",
    "de": "Polly.Marlene",
    "es": "Polly.Conchita",
    "fr": "Polly.Celine",
    "it": "Polly.Carla",
    "ja": "Polly.Mizuki",
    "ko": "Polly.Seoyeon",
    "pt": "Polly.Vitoria",
    "zh": "Polly.Zhiyu",
}

# <Say language=...> takes a full locale, not a bare language code.
POLLY_LOCALES = {
    "en": "en-US",
    "ru": "ru-RU",
    "de": "de-DE",
    "es": "es-ES",
    "fr": "fr-FR",
    "it": "it-IT",
    "ja": "ja-JP",
    "ko": "ko-KR",
    "pt": "pt-BR",
    "zh": "cmn-CN",
}


@dataclass
class CallResult:
    call_sid: str
    status: str


def build_twiml(message: str, language: str = "en") -> str:
    if language not in POLLY_VOICES:
        language = "en"
    response = VoiceResponse()
    response.say(message, voice=POLLY_VOICES[language], language=POLLY_LOCALES[language])
    return str(response)


class TwilioCallProvider:
    def __init__(self, account_sid: str, auth_token: str, from_number: str,
                 client: Any = None):
        if not account_sid or not auth_token:
            raise ValueError("Twilio account SID and auth token are required")
        if not from_number:
            raise ValueError("Twilio from_number is required")
        self.from_number = from_number
        self.client = client or Client(account_sid, auth_token)

    @classmethod
    def from_env(cls, sid_env: str, token_env: str, from_number: str) -> TwilioCallProvider:
        return cls(os.environ.get(sid_env, ""), os.environ.get(token_env, ""), from_number)

    async def make_call(self, to: str, message: str, language: str = "en") -> CallResult:
        twiml = build_twiml(message, language)
        call = await asyncio.to_thread(
            self.client.calls.create, to=to, from_=self.from_number, twiml=twiml,
        )
        log.info("Twilio call initiated: sid=%s status=%s", call.sid, call.status)
        return CallResult(call_sid=call.sid, status=call.status)
