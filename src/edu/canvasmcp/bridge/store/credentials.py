"""
Credential Store

Persistent operations over users, API keys, browser sessions, magic links and OAuth
records. Every mutation touches a single row, except linking Canvas credentials to a
pre-activated user, which issues the API key and saves the link in one conditional
UPDATE so two racing requests cannot both issue a key.

Argon2 hashing and verification run in a worker thread; no database transaction is held
while they run.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError as DatabaseIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from edu.canvasmcp.bridge.crypto.hashing import SecretHasher, generate_api_key
from edu.canvasmcp.bridge.crypto.tokens import TokenCipher
from edu.canvasmcp.bridge.errors import InvalidCredential, NotFound
from edu.canvasmcp.bridge.model import (
    AccessToken,
    AuthorizationCode,
    BrowserSession,
    MagicLink,
    UsageLog,
    User,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


@dataclass
class LinkResult:
    """
    Outcome of create-or-link.

    Attributes:
        user: The linked user row
        api_key: Plaintext API key when one was issued by this call, otherwise None.
            It is never retrievable again.
        is_new_user: True when this call activated the account
    """

    user: User
    api_key: Optional[str]
    is_new_user: bool


@dataclass
class SweepResult:
    sessions: int = 0
    authorization_codes: int = 0
    access_tokens: int = 0
    magic_links: int = 0

    @property
    def total(self) -> int:
        return (
            self.sessions
            + self.authorization_codes
            + self.access_tokens
            + self.magic_links
        )


class CredentialStore:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
        hasher: SecretHasher,
    ) -> None:
        self._session_maker = session_maker
        self._cipher = cipher
        self._hasher = hasher

    # Users

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_maker() as database_session:
            return await database_session.get(User, user_id)

    async def get_user_by_canvas_id(
        self, canvas_domain: str, canvas_user_id: str
    ) -> Optional[User]:
        async with self._session_maker() as database_session:
            stmt = select(User).where(
                User.canvas_domain == canvas_domain,
                User.canvas_user_id == canvas_user_id,
            )
            return (await database_session.scalars(stmt)).first()

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._session_maker() as database_session:
            stmt = (
                select(User)
                .where(User.email == normalize_email(email))
                .order_by(User.created_at)
            )
            return (await database_session.scalars(stmt)).first()

    async def get_or_create_user_by_email(self, email: str) -> User:
        """Find a user by email, or create a pre-activated one with no Canvas link."""
        email = normalize_email(email)
        if email is None:
            raise ValueError("email is required")

        existing = await self.get_user_by_email(email)
        if existing is not None:
            return existing

        user = User(id=str(ULID()), email=email, created_at=utcnow())
        async with self._session_maker() as database_session:
            async with database_session.begin():
                database_session.add(user)
        logger.info("Created pre-activated user %s", user.id)
        return user

    async def create_or_link_user(
        self,
        canvas_user_id: str,
        canvas_domain: str,
        canvas_access_token: str,
        email: Optional[str] = None,
        canvas_refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        prefer_user_id: Optional[str] = None,
    ) -> LinkResult:
        """
        Link verified Canvas credentials to a user.

        Resolution order:
            1. The user already linked to ``canvas_user_id`` on ``canvas_domain``: tokens are
               replaced, no key
            2. The pre-activated user ``prefer_user_id`` (the caller's session user)
            3. The oldest pre-activated user with a matching email
            4. A brand new user

        Cases 2-4 issue an API key. Existing users must regenerate their key if they lost
        it, since only its hash is stored.
        """
        now = utcnow()
        email = normalize_email(email)
        link_values = {
            "canvas_user_id": canvas_user_id,
            "canvas_domain": canvas_domain,
            "canvas_access_token": self._cipher.encrypt(canvas_access_token),
            "canvas_refresh_token": (
                self._cipher.encrypt(canvas_refresh_token)
                if canvas_refresh_token
                else None
            ),
            "token_expires_at": token_expires_at,
            "last_used_at": now,
        }

        existing = await self._relink_existing(canvas_domain, canvas_user_id, link_values)
        if existing is not None:
            return LinkResult(user=existing, api_key=None, is_new_user=False)

        api_key = generate_api_key()
        api_key_hash = await asyncio.to_thread(self._hasher.hash, api_key)

        candidate_id = await self._find_pre_activated(prefer_user_id, email)
        if candidate_id is not None:
            return await self._link_pre_activated(
                candidate_id, email, link_values, api_key, api_key_hash
            )

        user = User(
            id=str(ULID()),
            email=email,
            api_key_hash=api_key_hash,
            created_at=now,
            **link_values,
        )
        try:
            async with self._session_maker() as database_session:
                async with database_session.begin():
                    database_session.add(user)
        except DatabaseIntegrityError:
            # Another request linked the same Canvas account first.
            existing = await self._relink_existing(canvas_domain, canvas_user_id, link_values)
            if existing is None:
                raise
            return LinkResult(user=existing, api_key=None, is_new_user=False)

        logger.info("Created linked user %s for %s", user.id, canvas_domain)
        return LinkResult(user=user, api_key=api_key, is_new_user=True)

    async def _relink_existing(
        self, canvas_domain: str, canvas_user_id: str, link_values: dict
    ) -> Optional[User]:
        async with self._session_maker() as database_session:
            async with database_session.begin():
                stmt = select(User.id).where(
                    User.canvas_domain == canvas_domain,
                    User.canvas_user_id == canvas_user_id,
                )
                user_id = (await database_session.scalars(stmt)).first()
                if user_id is None:
                    return None
                await database_session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(**link_values)
                    .execution_options(synchronize_session=False)
                )
        return await self.get_user(user_id)

    async def _find_pre_activated(
        self, prefer_user_id: Optional[str], email: Optional[str]
    ) -> Optional[str]:
        async with self._session_maker() as database_session:
            if prefer_user_id is not None:
                stmt = select(User.id).where(
                    User.id == prefer_user_id, User.canvas_user_id.is_(None)
                )
                found = (await database_session.scalars(stmt)).first()
                if found is not None:
                    return found

            if email is not None:
                stmt = (
                    select(User.id)
                    .where(User.email == email, User.canvas_user_id.is_(None))
                    .order_by(User.created_at)
                )
                return (await database_session.scalars(stmt)).first()
        return None

    async def _link_pre_activated(
        self,
        user_id: str,
        email: Optional[str],
        link_values: dict,
        api_key: str,
        api_key_hash: str,
    ) -> LinkResult:
        values = dict(link_values)
        if email is not None:
            values["email"] = func.coalesce(User.email, email)

        async with self._session_maker() as database_session:
            async with database_session.begin():
                # Compare-and-set: only the request that finds no key issues one.
                result = await database_session.execute(
                    update(User)
                    .where(User.id == user_id, User.api_key_hash.is_(None))
                    .values(api_key_hash=api_key_hash, **values)
                    .execution_options(synchronize_session=False)
                )
                issued = result.rowcount == 1
                if not issued:
                    await database_session.execute(
                        update(User)
                        .where(User.id == user_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )

        user = await self.get_user(user_id)
        if user is None:
            raise NotFound.user(user_id)
        logger.info("Linked Canvas account to pre-activated user %s", user_id)
        return LinkResult(
            user=user, api_key=api_key if issued else None, is_new_user=issued
        )

    # API keys

    async def rotate_api_key(self, user_id: str) -> str:
        """
        Issue a new API key for a linked user, replacing the previous hash.

        Raises:
            NotFound: The user does not exist
            InvalidCredential: The user has no Canvas link
        """
        user = await self.get_user(user_id)
        if user is None:
            raise NotFound.user(user_id)
        if not user.is_linked:
            raise InvalidCredential.account_not_linked()

        api_key = generate_api_key()
        api_key_hash = await asyncio.to_thread(self._hasher.hash, api_key)

        async with self._session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(api_key_hash=api_key_hash)
                    .execution_options(synchronize_session=False)
                )
        logger.info("Rotated API key for user %s", user_id)
        return api_key

    async def find_user_by_api_key(self, api_key: str) -> Optional[User]:
        """Scan every activated user and verify the key against each hash."""
        async with self._session_maker() as database_session:
            stmt = select(User.id, User.api_key_hash).where(
                User.api_key_hash.is_not(None)
            )
            candidates = (await database_session.execute(stmt)).all()

        user_id = await asyncio.to_thread(self._scan, api_key, candidates)
        if user_id is None:
            return None
        return await self.get_user(user_id)

    def _scan(
        self, api_key: str, candidates: Sequence[Tuple[str, str]]
    ) -> Optional[str]:
        for user_id, api_key_hash in candidates:
            if self._hasher.verify(api_key, api_key_hash):
                return user_id
        return None

    # Canvas tokens

    def canvas_token(self, user: User) -> str:
        if user.canvas_access_token is None:
            raise NotFound.canvas_link(user.id)
        return self._cipher.decrypt(user.canvas_access_token)

    def canvas_refresh_token(self, user: User) -> Optional[str]:
        if user.canvas_refresh_token is None:
            return None
        return self._cipher.decrypt(user.canvas_refresh_token)

    # Usage

    async def record_usage(self, user_id: str, endpoint: str) -> None:
        now = utcnow()
        async with self._session_maker() as database_session:
            async with database_session.begin():
                database_session.add(
                    UsageLog(user_id=user_id, endpoint=endpoint, timestamp=now)
                )
                await database_session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(last_used_at=now)
                    .execution_options(synchronize_session=False)
                )

    async def usage_stats(self, user_id: str, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        windows = {
            "total_requests": None,
            "requests_24h": now - timedelta(days=1),
            "requests_7d": now - timedelta(days=7),
        }
        stats = {}
        async with self._session_maker() as database_session:
            for name, since in windows.items():
                stmt = (
                    select(func.count())
                    .select_from(UsageLog)
                    .where(UsageLog.user_id == user_id)
                )
                if since is not None:
                    stmt = stmt.where(UsageLog.timestamp >= since)
                stats[name] = (await database_session.scalar(stmt)) or 0
        return stats

    async def prune_usage_logs(
        self, retention_days: int = 90, now: Optional[datetime] = None
    ) -> int:
        horizon = (now or utcnow()) - timedelta(days=retention_days)
        async with self._session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(UsageLog).where(UsageLog.timestamp < horizon)
                )
                return result.rowcount

    # Browser sessions

    async def create_session(
        self,
        user_id: Optional[str] = None,
        canvas_domain: Optional[str] = None,
        api_key: Optional[str] = None,
        max_age: int = 2592000,
    ) -> BrowserSession:
        now = utcnow()
        browser_session = BrowserSession(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            canvas_domain=canvas_domain,
            api_key=self._cipher.encrypt(api_key) if api_key else None,
            created_at=now,
            expires_at=now + timedelta(seconds=max_age),
        )
        async with self._session_maker() as database_session:
            async with database_session.begin():
                database_session.add(browser_session)
        return browser_session

    async def get_session(self, session_id: str) -> Optional[BrowserSession]:
        async with self._session_maker() as database_session:
            stmt = select(BrowserSession).where(
                BrowserSession.id == session_id,
                BrowserSession.expires_at > utcnow(),
            )
            return (await database_session.scalars(stmt)).first()

    async def take_session_api_key(self, session_id: str) -> Optional[str]:
        """Return the one-time API key held by a session and clear it."""
        async with self._session_maker() as database_session:
            async with database_session.begin():
                stmt = select(BrowserSession.api_key).where(
                    BrowserSession.id == session_id
                )
                encrypted = (await database_session.scalars(stmt)).first()
                if encrypted is None:
                    return None
                result = await database_session.execute(
                    update(BrowserSession)
                    .where(
                        BrowserSession.id == session_id,
                        BrowserSession.api_key == encrypted,
                    )
                    .values(api_key=None)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
        return self._cipher.decrypt(encrypted)

    async def delete_session(self, session_id: str) -> None:
        async with self._session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    delete(BrowserSession).where(BrowserSession.id == session_id)
                )

    # Magic links

    async def last_magic_link_issued_at(self, email: str) -> Optional[datetime]:
        async with self._session_maker() as database_session:
            stmt = (
                select(MagicLink.created_at)
                .where(MagicLink.email == normalize_email(email))
                .order_by(MagicLink.created_at.desc())
                .limit(1)
            )
            return (await database_session.scalars(stmt)).first()

    async def create_magic_link(
        self, email: str, ttl: timedelta, return_to: Optional[str] = None
    ) -> MagicLink:
        now = utcnow()
        magic_link = MagicLink(
            token=secrets.token_urlsafe(32),
            email=normalize_email(email),
            return_to=return_to,
            created_at=now,
            expires_at=now + ttl,
        )
        async with self._session_maker() as database_session:
            async with database_session.begin():
                database_session.add(magic_link)
        return magic_link

    async def consume_magic_link(self, token: str) -> Optional[MagicLink]:
        """Mark a live, unused link as used. Returns None for unknown, used or expired links."""
        now = utcnow()
        async with self._session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    update(MagicLink)
                    .where(
                        MagicLink.token == token,
                        MagicLink.used_at.is_(None),
                        MagicLink.expires_at > now,
                    )
                    .values(used_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
            return await database_session.get(MagicLink, token)

    # OAuth

    async def create_authorization_code(
        self,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        scope: str,
        ttl: timedelta,
    ) -> AuthorizationCode:
        now = utcnow()
        authorization_code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            user_id=user_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            scope=scope,
            created_at=now,
            expires_at=now + ttl,
        )
        async with self._session_maker() as database_session:
            async with database_session.begin():
                database_session.add(authorization_code)
        return authorization_code

    async def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        async with self._session_maker() as database_session:
            return await database_session.get(AuthorizationCode, code)

    async def delete_authorization_code(self, code: str) -> bool:
        """Delete a code. Returns False if it was already gone, e.g. spent concurrently."""
        async with self._session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(AuthorizationCode).where(AuthorizationCode.code == code)
                )
                return result.rowcount == 1

    async def create_access_token(
        self, user_id: str, client_id: str, scope: str, ttl: timedelta
    ) -> AccessToken:
        now = utcnow()
        access_token = AccessToken(
            token=secrets.token_urlsafe(48),
            user_id=user_id,
            client_id=client_id,
            scope=scope,
            created_at=now,
            expires_at=now + ttl,
        )
        async with self._session_maker() as database_session:
            async with database_session.begin():
                database_session.add(access_token)
        return access_token

    async def get_access_token(self, token: str) -> Optional[AccessToken]:
        async with self._session_maker() as database_session:
            stmt = select(AccessToken).where(
                AccessToken.token == token, AccessToken.expires_at > utcnow()
            )
            return (await database_session.scalars(stmt)).first()

    # Maintenance

    async def sweep_expired(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utcnow()
        counts: List[int] = []
        async with self._session_maker() as database_session:
            async with database_session.begin():
                for model in (BrowserSession, AuthorizationCode, AccessToken, MagicLink):
                    result = await database_session.execute(
                        delete(model).where(model.expires_at < now)
                    )
                    counts.append(result.rowcount)
        return SweepResult(*counts)
