from __future__ import annotations

import threading
from typing import Optional

from eventauth.config import get_settings, reset_settings_cache
from eventauth.logging import get_logger
from eventauth.service.email import EmailService
from eventauth.service.session import AccountStore, SessionFacade
from eventauth.storage.memory import MemoryAccountStore

logger = get_logger(__name__)


class Runtime:
    """Holds the process-wide credential stores and the façade over them.

    The stores are volatile: restarting the process forgets every
    outstanding code, reset token and revocation.
    """

    def __init__(self, accounts: Optional[AccountStore] = None):
        self.settings = get_settings()
        self.accounts = accounts if accounts is not None else MemoryAccountStore()
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            log_only=self.settings.test_mode,
        )
        self.sessions = SessionFacade(self.accounts, self.email, self.settings)
        logger.info(
            "runtime_initialized",
            test_mode=self.settings.test_mode,
            email_configured=self.email.is_configured,
            otp_ttl_seconds=self.settings.otp_ttl_seconds,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
