"""
Pluggable OTP resolution strategies.

`AuthManager` asks its resolver for a code after login phase 1. Resolvers
are swappable: a manually supplied code, an IMAP mailbox poller, or a chain
that tries several in order.
"""

import inspect
import logging
from typing import Awaitable, Callable, Protocol, Union, runtime_checkable

from axiom_session.email.otp_fetcher import OtpFetcher
from axiom_session.exceptions import EmailError, OtpNotReceivedError, OtpRequiredError


logger = logging.getLogger(__name__)

OtpPrompt = Callable[[], Union[str, Awaitable[str]]]


@runtime_checkable
class OtpResolver(Protocol):
    async def resolve(self, challenge: str) -> str:
        """Return the OTP code for the pending login challenge."""
        ...


class ManualOtpResolver:
    """
    Resolves with a code supplied by the user.

    ## Args:
    - `code` (str, optional): A code known up front; it is used once
    - `prompt` (callable, optional): Sync or async callable asked for a code
      every time one is needed

    Raises `OtpRequiredError` (carrying the challenge) when neither can
    provide a code, so the caller can finish the login itself.
    """

    def __init__(self, code: str | None = None, prompt: OtpPrompt | None = None) -> None:
        self._code = code
        self._prompt = prompt

    async def resolve(self, challenge: str) -> str:
        if self._code:
            code, self._code = self._code, None
            return code.strip()

        if self._prompt is not None:
            result = self._prompt()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return str(result).strip()

        raise OtpRequiredError("OTP code required to complete login", challenge=challenge)


class EmailOtpResolver:
    """Polls an IMAP mailbox for the security code email."""

    def __init__(
        self,
        fetcher: OtpFetcher,
        timeout_seconds: float = 120,
        poll_interval_seconds: float = 5,
    ) -> None:
        self.fetcher = fetcher
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    async def resolve(self, challenge: str) -> str:
        otp = await self.fetcher.wait_for_otp(
            timeout_seconds=self.timeout_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
        )
        if otp is None:
            raise OtpNotReceivedError(
                f"No OTP email received within {self.timeout_seconds} seconds"
            )
        return otp


class ChainedOtpResolver:
    """
    Tries each resolver in order, typically email first and manual second.

    A resolver that fails with `EmailError` or `OtpRequiredError` hands over
    to the next one; the last error is raised if all of them fail.
    """

    def __init__(self, *resolvers: OtpResolver) -> None:
        if not resolvers:
            raise ValueError("ChainedOtpResolver needs at least one resolver")
        self.resolvers = resolvers

    async def resolve(self, challenge: str) -> str:
        last_error: Exception | None = None
        for resolver in self.resolvers:
            try:
                return await resolver.resolve(challenge)
            except (EmailError, OtpRequiredError) as e:
                logger.warning(f"{type(resolver).__name__} could not provide an OTP: {e}")
                last_error = e
        raise last_error
