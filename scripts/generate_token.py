#!/usr/bin/env python3
"""
Generate secrets for the dispatch service configuration.

Usage:
    python scripts/generate_token.py          # one 32-byte token
    python scripts/generate_token.py 48       # one 48-byte token
    python scripts/generate_token.py --env    # every secret the service reads, as .env lines

Tokens are URL-safe base64, which Telegram also accepts as a webhook secret_token.
"""
import secrets
import sys

ENV_KEYS = ("ADMIN_TOKEN", "CRON_SECRET", "TELEGRAM_WEBHOOK_SECRET", "UPLOAD_TOKEN_SECRET")


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    if env_format:
        for key in ENV_KEYS:
            print(f"{key}={secrets.token_urlsafe(length)}")
    else:
        print(secrets.token_urlsafe(length))


if __name__ == "__main__":
    main()
