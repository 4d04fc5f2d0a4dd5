"""Client factories for catalog-miner.

Secrets are read from the environment (via python-dotenv) so they stay out
of config.json and the repo.
"""

from __future__ import annotations

import logging
import os
from getpass import getpass

import qrcode
from dotenv import load_dotenv
from telethon import TelegramClient, errors

import settings
from adapters.http_enrichment import HttpEnrichmentAdapter
from miner.config import RetryConfig
from miner.errors import SetupError


def build_client() -> TelegramClient:
    """Create a Telethon client from environment variables.

    The session name defaults to "catalog-miner" to create a local .session file.
    """

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    session_name = os.getenv("SESSION_NAME", "catalog-miner")

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise SetupError("Missing API_ID or API_HASH in environment")

    logging.getLogger(__name__).info("Initializing Telegram client")

    return TelegramClient(session_name, int(api_id), api_hash)


def _print_qr(url: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


async def authorize(client: TelegramClient) -> None:
    """Log the poller account in unless its session file is already authorized.

    LOGIN_METHOD=phone asks for a login code; anything else shows a QR code.
    """

    if await client.is_user_authorized():
        return

    try:
        if (os.getenv("LOGIN_METHOD") or "").strip().lower() == "phone":
            phone = os.getenv("PHONE") or input("Phone number (international format): ").strip()
            await client.send_code_request(phone)
            await client.sign_in(phone=phone, code=input("Login code: ").strip())
        else:
            qr = await client.qr_login()
            _print_qr(qr.url)
            await qr.wait(timeout=120)
    except errors.SessionPasswordNeededError:
        await client.sign_in(password=os.getenv("2FA") or getpass("2FA password: "))


def build_enrichment(retry: RetryConfig) -> HttpEnrichmentAdapter:
    """Create the chat-completions enrichment adapter from config.json and the environment."""

    load_dotenv()

    api_key = os.getenv("ENRICHMENT_API_KEY")
    if not api_key:
        raise SetupError("Missing ENRICHMENT_API_KEY in environment")

    cfg = settings.ENRICHMENT
    base_url = os.getenv("ENRICHMENT_BASE_URL") or cfg.get("base_url")
    if not base_url:
        raise SetupError("enrichment.base_url is required")

    logging.getLogger(__name__).info("Initializing enrichment client for %s", base_url)

    return HttpEnrichmentAdapter(
        base_url=base_url,
        api_key=api_key,
        text_model=cfg.get("text_model", "meta-llama/llama-4-scout-17b-16e-instruct"),
        vision_model=cfg.get("vision_model", "meta-llama/llama-4-maverick-17b-128e-instruct"),
        grouping_model=cfg.get("grouping_model"),
        retry=retry,
        temperature=float(cfg.get("temperature", 0.1)),
    )
