#!/usr/bin/env python3
"""Check that outbound email is configured well enough to deliver login codes.

Usage:
    # Verify the SMTP connection and credentials only:
    python scripts/check_email_config.py

    # Also send a sample login code message:
    python scripts/check_email_config.py --send-to you@example.com

Environment Variables:
    SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, SMTP_USE_TLS
    EMAIL_FROM_ADDRESS, EMAIL_FROM_NAME
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def check_email_config(send_to: str | None = None) -> int:
    """Return a process exit code: 0 when delivery works, 1 otherwise."""
    # Import here so .env is read only when the script runs
    from eventauth.config import get_settings
    from eventauth.service.email import DeliveryError, EmailService
    from eventauth.service.otp import OtpStore

    settings = get_settings()
    print("Email settings:")
    print(f"  SMTP_HOST:          {settings.smtp_host or 'missing'}")
    print(f"  SMTP_PORT:          {settings.smtp_port}")
    print(f"  SMTP_USER:          {'set' if settings.smtp_user else 'missing'}")
    print(f"  SMTP_PASSWORD:      {'set' if settings.smtp_password else 'missing'}")
    print(f"  EMAIL_FROM_ADDRESS: {settings.email_from_address or 'missing'}")
    print()

    email = EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
        base_url=settings.app_base_url,
    )
    if not email.is_configured:
        print("Error: SMTP_HOST and EMAIL_FROM_ADDRESS (or SMTP_USER) must be set")
        return 1

    print("Testing SMTP connection...")
    if not email.check_connection():
        print("Connection or authentication failed.")
        print("Common issues:")
        print("  1. Gmail and similar providers need an app password, not the account password")
        print("  2. Port 587 expects SMTP_USE_TLS=true, port 465 expects SMTP_USE_TLS=false")
        print("  3. Firewalls often block outbound SMTP")
        return 1
    print("SMTP connection OK.")

    if send_to:
        code = OtpStore(ttl_seconds=settings.otp_ttl_seconds).generate_code()
        try:
            email.send_login_code(send_to, code, settings.otp_ttl_seconds, "Test")
        except DeliveryError as exc:
            print(f"Sending failed: {exc}")
            return 1
        print(f"Sample login code message sent to {send_to}.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Check outbound email configuration")
    parser.add_argument("--send-to", help="Address that should receive a sample message")
    args = parser.parse_args()
    return check_email_config(args.send_to)


if __name__ == "__main__":
    sys.exit(main())
