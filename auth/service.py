"""
auth/service.py -- AuthService: the register/login/refresh/verify/reset/logout flows.

AuthService composes the leaf components (CredentialVerifier, TokenCodec,
SessionStore, RefreshRotationPolicy, MfaManager, PasswordResetThrottler) and
the Notifier collaborator. It takes already-validated, typed input from the
api/ layer and returns result values or raises auth.errors types.

Failure policy:
  Business-rule violations raise typed AuthServiceError subclasses at the
  point of detection and propagate untouched.
  Notifier failures AFTER a committed mutation raise NotificationError. The
  mutation is NOT rolled back: a registered account stays registered, an
  issued reset code stays issued. Clients retry the e-mail step through
  resend_verification() / forgot_password().

Enumeration policy:
  Login and the MFA login step fail identically for unknown accounts.
  forgot_password() and resend_verification() return silently for unknown
  e-mails; the route answers with the same message either way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    EmailAlreadyExistsError,
    MfaInvalidCodeError,
    NotFoundError,
    NotificationError,
    SessionExpiredError,
    SessionNotFoundError,
    TokenInvalidError,
    TokenNotFoundError,
)
from auth.mfa import MfaManager, MfaSetup
from auth.models import Account, Session, VerificationCode, VerificationKind
from auth.notify import EmailMessage, Notifier, password_reset_email, verification_email
from auth.passwords import CredentialVerifier, hash_password
from auth.rotation import RefreshResult, RefreshRotationPolicy
from auth.store import AccountStore, SessionStore, VerificationCodeStore
from auth.throttle import PasswordResetThrottler
from auth.tokens import AccessPayload, MfaChallengePayload, RefreshPayload, TokenCodec, TokenKind
from core.config import Settings
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatehouse.auth")


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a credential check.

    mfa_required=True carries the account identity and a short-lived
    mfa_token but no session and no tokens; the client must present the
    mfa_token together with a TOTP code to complete the login.
    """

    account: Account
    mfa_required: bool = False
    session: Session | None = None
    tokens: TokenPair | None = None
    mfa_token: str | None = None


@dataclass(frozen=True)
class SessionView:
    session: Session
    is_current: bool


class AuthService:
    def __init__(
        self,
        settings: Settings,
        accounts: AccountStore,
        sessions: SessionStore,
        codes: VerificationCodeStore,
        notifier: Notifier,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self.accounts = accounts
        self.sessions = sessions
        self.codes = codes
        self.notifier = notifier
        self._clock = clock

        self.verifier = CredentialVerifier(accounts)
        self.codec = TokenCodec(settings, clock)
        self.rotation = RefreshRotationPolicy(sessions, self.codec, settings, clock)
        self.mfa = MfaManager(accounts, settings, clock)
        self.throttler = PasswordResetThrottler(codes, settings, clock)

    # ------------------------------------------------------------------
    # Registration and e-mail verification
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str = "") -> Account:
        """Create an account and send its verification e-mail.

        Raises EmailAlreadyExistsError if the e-mail is taken, NotificationError
        if the account was created but the e-mail could not be sent.
        """
        if self.accounts.get_by_email(email) is not None:
            raise EmailAlreadyExistsError()
        try:
            account_id = self.accounts.create(
                Account(email=email, name=name, hashed_password=hash_password(password))
            )
        except IntegrityError as exc:
            # Lost a concurrent registration race for the same e-mail.
            raise EmailAlreadyExistsError() from exc

        account = self._require_account(account_id)
        code = self.codes.create(
            account.id,
            VerificationKind.EMAIL_VERIFICATION,
            timedelta(seconds=self.settings.email_verification_expire_seconds),
        )
        logger.info("Registered account %s", account.id)
        self._dispatch(verification_email(account.email, account.name, self.settings.app_origin_stripped, code.code))
        return account

    def verify_email(self, code: str) -> Account:
        redeemed = self.codes.consume(code, VerificationKind.EMAIL_VERIFICATION)
        if redeemed is None:
            raise NotFoundError("Invalid or expired verification code.")
        self.accounts.update(redeemed.account_id, is_email_verified=True)
        logger.info("E-mail verified for account %s", redeemed.account_id)
        return self._require_account(redeemed.account_id)

    def resend_verification(self, email: str) -> None:
        """Re-send the verification e-mail. Safe to call repeatedly.

        Reuses the newest unexpired code instead of minting a new one per call.
        Unknown or already verified accounts are a silent no-op.
        """
        account = self.accounts.get_by_email(email)
        if account is None or account.is_email_verified:
            return
        code = self.codes.find_valid_for_account(account.id, VerificationKind.EMAIL_VERIFICATION)
        if code is None:
            code = self.codes.create(
                account.id,
                VerificationKind.EMAIL_VERIFICATION,
                timedelta(seconds=self.settings.email_verification_expire_seconds),
            )
        self._dispatch(verification_email(account.email, account.name, self.settings.app_origin_stripped, code.code))

    # ------------------------------------------------------------------
    # Login / MFA login / refresh / logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, user_agent: str | None = None) -> LoginResult:
        account = self.verifier.verify(email, password)
        if account.mfa_enabled:
            logger.info("Password accepted for account %s; MFA required", account.id)
            challenge = self.codec.sign(MfaChallengePayload(account_id=account.id), TokenKind.MFA_CHALLENGE)
            return LoginResult(account=account, mfa_required=True, mfa_token=challenge)
        return self._start_session(account, user_agent)

    def verify_mfa_login(
        self, email: str, code: str, mfa_token: str | None, user_agent: str | None = None
    ) -> LoginResult:
        """Second login step for MFA accounts. Issues a session exactly like login().

        mfa_token must be the challenge login() handed out for this same
        account, still unexpired; a TOTP code alone never starts a session.
        """
        challenge = self.codec.verify(mfa_token, TokenKind.MFA_CHALLENGE) if mfa_token else None
        account = self.accounts.get_by_email(email)
        if (
            challenge is None
            or account is None
            or challenge.account_id != account.id
            or not self.mfa.verify_for_login(account, code)
        ):
            raise MfaInvalidCodeError()
        return self._start_session(account, user_agent)

    def refresh(self, refresh_token: str | None) -> RefreshResult:
        if not refresh_token:
            raise TokenNotFoundError("Missing refresh token.")
        return self.rotation.refresh(refresh_token)

    def logout(self, session_id: str | None) -> None:
        if not session_id:
            raise NotFoundError("Session is invalid.")
        self.sessions.delete_by_id(session_id)
        logger.info("Logged out session %s", session_id)

    def authenticate(self, access_token: str | None) -> tuple[Account, Session]:
        """Resolve an access token to its account and live session.

        The session must still exist, so logout and password reset take effect
        immediately rather than when the access token expires.
        """
        if not access_token:
            raise TokenNotFoundError()
        payload = self.codec.verify(access_token, TokenKind.ACCESS)
        if payload is None:
            raise TokenInvalidError()
        session = self.sessions.find_by_id(payload.session_id)
        if session is None or session.account_id != payload.account_id:
            raise SessionNotFoundError()
        if session.is_expired(self._clock()):
            raise SessionExpiredError()
        account = self.accounts.get_by_id(payload.account_id)
        if account is None:
            raise SessionNotFoundError()
        return account, session

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> VerificationCode | None:
        """Issue a reset code and e-mail it. Returns None for unknown e-mails.

        Raises RateLimitExceededError when the account is throttled and
        NotificationError when the code was issued but the e-mail failed.
        """
        account = self.accounts.get_by_email(email)
        if account is None:
            logger.info("Password reset requested for unknown e-mail")
            return None
        code = self.throttler.issue(account.id)
        logger.info("Password reset code issued for account %s", account.id)
        self._dispatch(
            password_reset_email(
                account.email,
                account.name,
                self.settings.app_origin_stripped,
                code.code,
                code.expires_at,
            )
        )
        return code

    def reset_password(self, code: str, new_password: str) -> Account:
        """Redeem a reset code, replace the password, and end every session of the account."""
        # Hash before redeeming so an unusable password does not burn the code.
        hashed = hash_password(new_password)
        redeemed = self.codes.consume(code, VerificationKind.PASSWORD_RESET)
        if redeemed is None:
            raise NotFoundError("Invalid or expired verification code.")
        self.accounts.update(redeemed.account_id, hashed_password=hashed)
        removed = self.sessions.delete_all_by_account(redeemed.account_id)
        logger.info("Password reset for account %s; %d session(s) revoked", redeemed.account_id, removed)
        return self._require_account(redeemed.account_id)

    # ------------------------------------------------------------------
    # MFA management
    # ------------------------------------------------------------------

    def begin_mfa_setup(self, account: Account) -> MfaSetup:
        return self.mfa.begin_setup(account)

    def complete_mfa_setup(self, account: Account, code: str, secret: str) -> bool:
        return self.mfa.complete_setup(account, code, secret)

    def disable_mfa(self, account: Account) -> None:
        self.mfa.disable(account)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def list_sessions(self, account_id: int, current_session_id: str) -> list[SessionView]:
        return [
            SessionView(session=s, is_current=s.id == current_session_id)
            for s in self.sessions.list_by_account(account_id)
        ]

    def revoke_session(self, account_id: int, session_id: str) -> None:
        if not self.sessions.delete_by_id(session_id, account_id=account_id):
            raise NotFoundError("Session not found.")
        logger.info("Account %s revoked session %s", account_id, session_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_session(self, account: Account, user_agent: str | None) -> LoginResult:
        session = self.sessions.create(account.id, user_agent)
        tokens = TokenPair(
            access_token=self.codec.sign(
                AccessPayload(account_id=account.id, session_id=session.id),
                TokenKind.ACCESS,
            ),
            refresh_token=self.codec.sign(RefreshPayload(session_id=session.id), TokenKind.REFRESH),
        )
        logger.info("Session %s started for account %s", session.id, account.id)
        return LoginResult(account=account, session=session, tokens=tokens)

    def _require_account(self, account_id: int) -> Account:
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFoundError("Account not found.")
        return account

    def _dispatch(self, message: EmailMessage) -> None:
        try:
            self.notifier.send(message)
        except Exception as exc:
            # Boundary to an external collaborator: any failure here is a
            # partial failure of an already-committed flow.
            logger.exception("E-mail dispatch failed (subject=%r)", message.subject)
            raise NotificationError() from exc
