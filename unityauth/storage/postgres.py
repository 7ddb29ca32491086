from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, List, Optional, Set, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from unityauth.logging import get_logger
from unityauth.storage.common import normalize_email, normalize_territory_code
from unityauth.storage.errors import ConstraintViolation, UnknownTerritory
from unityauth.storage.models import (
    GlobalIdentity,
    InvitationToken,
    InvitationUse,
    NewUser,
    Session,
    Territory,
    User,
)

_GLOBAL_TABLES = ("global.territories", "global.identities", "global.sessions")

# Per-territory partition; {schema} is always a psycopg Identifier.
_TERRITORY_DDL = (
    "CREATE SCHEMA IF NOT EXISTS {schema}",
    """
    CREATE TABLE IF NOT EXISTS {schema}.invitation_tokens (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        token_type TEXT NOT NULL CHECK (token_type IN ('single_use', 'group')),
        email TEXT,
        max_uses INTEGER NOT NULL CHECK (max_uses >= 1),
        current_uses INTEGER NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT true,
        created_by_user_id UUID,
        purpose TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ,
        revoked_by_user_id UUID,
        CHECK (current_uses <= max_uses),
        CHECK (
            (token_type = 'single_use' AND max_uses = 1 AND email IS NOT NULL)
            OR (token_type = 'group' AND max_uses > 1 AND email IS NULL)
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.users (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT,
        password_hash TEXT NOT NULL,
        full_name TEXT,
        display_name TEXT,
        avatar_url TEXT,
        bio TEXT,
        email_visible BOOLEAN NOT NULL DEFAULT false,
        profile_public BOOLEAN NOT NULL DEFAULT true,
        is_verified BOOLEAN NOT NULL DEFAULT false,
        is_active BOOLEAN NOT NULL DEFAULT true,
        last_login_at TIMESTAMPTZ,
        invited_by_token_id UUID REFERENCES {schema}.invitation_tokens (id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_idx ON {schema}.users (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS {schema}.invitation_uses (
        id UUID PRIMARY KEY,
        token_id UUID NOT NULL REFERENCES {schema}.invitation_tokens (id),
        used_by_user_id UUID NOT NULL REFERENCES {schema}.users (id),
        used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        ip_address TEXT,
        user_agent TEXT
    )
    """,
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _valid_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store with one schema per territory.

    Global tables (territories, identities, sessions) live in the ``global``
    schema; users and invitations live in ``territory_<code>``.
    """

    def __init__(self, dsn: str, *, min_size: int = 5, max_size: int = 20) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._known_territories: Set[str] = set()
        self._territory_lock = threading.Lock()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure global tables exist before serving requests."""

        with self._connect() as conn:
            missing = []
            for table in _GLOBAL_TABLES:
                row = conn.execute("SELECT to_regclass(%s) AS oid", (table,)).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def _schema(self, territory_code: str) -> sql.Identifier:
        """Resolve a territory code to its schema identifier via the allow-list."""
        code = normalize_territory_code(territory_code)
        with self._territory_lock:
            if code in self._known_territories:
                return sql.Identifier(f"territory_{code}")
        with self._connect() as conn:
            row = conn.execute(
                "SELECT code FROM global.territories WHERE code = %s", (code,)
            ).fetchone()
        if not row:
            raise UnknownTerritory(territory_code)
        with self._territory_lock:
            self._known_territories.add(code)
        return sql.Identifier(f"territory_{code}")

    @staticmethod
    def _q(template: str, schema: sql.Identifier) -> sql.Composed:
        return sql.SQL(template).format(schema=schema)

    # row mappers
    @staticmethod
    def _territory_from_row(row: dict) -> Territory:
        return Territory(
            code=row["code"],
            name=row["name"],
            kind=row.get("type") or "country",
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
        )

    @staticmethod
    def _user_from_row(row: dict, territory_code: str) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            password_hash=row["password_hash"],
            territory_code=territory_code,
            email=row.get("email"),
            full_name=row.get("full_name"),
            display_name=row.get("display_name"),
            avatar_url=row.get("avatar_url"),
            bio=row.get("bio"),
            email_visible=row.get("email_visible", False),
            profile_public=row.get("profile_public", True),
            is_verified=row.get("is_verified", False),
            is_active=row.get("is_active", True),
            last_login_at=row.get("last_login_at"),
            invited_by_token_id=_str_or_none(row.get("invited_by_token_id")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _identity_from_row(row: dict) -> GlobalIdentity:
        return GlobalIdentity(
            id=str(row["id"]),
            territory_code=row["territory_code"],
            local_user_id=str(row["local_user_id"]),
            fingerprint=row["fingerprint"],
            username=row["username"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            identity_id=str(row["identity_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _invitation_from_row(row: dict) -> InvitationToken:
        return InvitationToken(
            id=str(row["id"]),
            token=row["token"],
            token_type=row["token_type"],
            max_uses=row["max_uses"],
            expires_at=row["expires_at"],
            email=row.get("email"),
            current_uses=row.get("current_uses", 0),
            is_active=row.get("is_active", True),
            created_by_user_id=_str_or_none(row.get("created_by_user_id")),
            purpose=row.get("purpose"),
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
            revoked_by_user_id=_str_or_none(row.get("revoked_by_user_id")),
        )

    @staticmethod
    def _use_from_row(row: dict) -> InvitationUse:
        return InvitationUse(
            id=str(row["id"]),
            token_id=str(row["token_id"]),
            used_by_user_id=str(row["used_by_user_id"]),
            used_at=row["used_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    # territories
    def provision_territory(
        self, code: str, name: str, *, kind: str = "country", is_active: bool = True
    ) -> Territory:
        """Register a territory and create its partition if missing."""
        normalized = normalize_territory_code(code)
        schema = sql.Identifier(f"territory_{normalized}")
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO global.territories (code, name, type, is_active)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (code) DO NOTHING
                    """,
                    (normalized, name, kind, is_active),
                )
                for statement in _TERRITORY_DDL:
                    conn.execute(self._q(statement, schema))
                row = conn.execute(
                    "SELECT * FROM global.territories WHERE code = %s", (normalized,)
                ).fetchone()
        with self._territory_lock:
            self._known_territories.add(normalized)
        self.logger.info("territory_provisioned", territory=normalized)
        return self._territory_from_row(row)

    def set_territory_active(self, code: str, is_active: bool) -> Optional[Territory]:
        normalized = normalize_territory_code(code)
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE global.territories SET is_active = %s WHERE code = %s RETURNING *",
                (is_active, normalized),
            ).fetchone()
        return self._territory_from_row(row) if row else None

    def get_territory(self, code: str) -> Optional[Territory]:
        try:
            normalized = normalize_territory_code(code)
        except UnknownTerritory:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM global.territories WHERE code = %s", (normalized,)
            ).fetchone()
        return self._territory_from_row(row) if row else None

    def list_territories(self, *, active_only: bool = True) -> List[Territory]:
        with self._connect() as conn:
            if active_only:
                rows = conn.execute(
                    "SELECT * FROM global.territories WHERE is_active ORDER BY code"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM global.territories ORDER BY code"
                ).fetchall()
        return [self._territory_from_row(row) for row in rows]

    # users
    def get_user(self, territory_code: str, user_id: str) -> Optional[User]:
        schema = self._schema(territory_code)
        if not _valid_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                self._q("SELECT * FROM {schema}.users WHERE id = %s", schema), (user_id,)
            ).fetchone()
        return self._user_from_row(row, normalize_territory_code(territory_code)) if row else None

    def get_user_by_username(self, territory_code: str, username: str) -> Optional[User]:
        schema = self._schema(territory_code)
        with self._connect() as conn:
            row = conn.execute(
                self._q("SELECT * FROM {schema}.users WHERE username = %s", schema),
                (username,),
            ).fetchone()
        return self._user_from_row(row, normalize_territory_code(territory_code)) if row else None

    def get_user_by_email(self, territory_code: str, email: str) -> Optional[User]:
        target = normalize_email(email)
        if not target:
            return None
        schema = self._schema(territory_code)
        with self._connect() as conn:
            row = conn.execute(
                self._q("SELECT * FROM {schema}.users WHERE lower(email) = %s", schema),
                (target,),
            ).fetchone()
        return self._user_from_row(row, normalize_territory_code(territory_code)) if row else None

    def touch_last_login(self, territory_code: str, user_id: str) -> Optional[datetime]:
        schema = self._schema(territory_code)
        with self._connect() as conn:
            row = conn.execute(
                self._q(
                    """
                    UPDATE {schema}.users SET last_login_at = now(), updated_at = now()
                    WHERE id = %s RETURNING last_login_at
                    """,
                    schema,
                ),
                (user_id,),
            ).fetchone()
        return row["last_login_at"] if row else None

    def set_user_active(
        self, territory_code: str, user_id: str, is_active: bool
    ) -> Optional[User]:
        schema = self._schema(territory_code)
        with self._connect() as conn:
            row = conn.execute(
                self._q(
                    """
                    UPDATE {schema}.users SET is_active = %s, updated_at = now()
                    WHERE id = %s RETURNING *
                    """,
                    schema,
                ),
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row, normalize_territory_code(territory_code)) if row else None

    def admit_user(
        self,
        territory_code: str,
        new_user: NewUser,
        *,
        fingerprint: str,
        invitation_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, GlobalIdentity]:
        """Insert a user, its global identity and the invitation use in one transaction."""
        schema = self._schema(territory_code)
        code = normalize_territory_code(territory_code)
        user_id = str(uuid.uuid4())
        identity_id = str(uuid.uuid4())
        email = new_user.email.strip() if new_user.email else None
        try:
            with self._connect() as conn:
                with conn.transaction():
                    if invitation_id is not None:
                        consumed = self._consume_invitation(conn, schema, invitation_id)
                        if consumed is None:
                            raise ConstraintViolation(
                                "invitation no longer available", {"field": "invitation"}
                            )
                    user_row = conn.execute(
                        self._q(
                            """
                            INSERT INTO {schema}.users
                                (id, username, email, password_hash, full_name, display_name,
                                 invited_by_token_id)
                            VALUES (%s, %s, %s, %s, %s, %s, %s)
                            RETURNING *
                            """,
                            schema,
                        ),
                        (
                            user_id,
                            new_user.username,
                            email,
                            new_user.password_hash,
                            new_user.full_name,
                            new_user.display_name or new_user.full_name,
                            invitation_id,
                        ),
                    ).fetchone()
                    identity_row = conn.execute(
                        """
                        INSERT INTO global.identities
                            (id, territory_code, local_user_id, fingerprint, username)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (identity_id, code, user_id, fingerprint, new_user.username),
                    ).fetchone()
                    if invitation_id is not None:
                        self._record_invitation_use(
                            conn, schema, invitation_id, user_id, ip_address, user_agent
                        )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "email" in constraint:
                raise ConstraintViolation("email already registered", {"field": "email"})
            if "fingerprint" in constraint:
                raise ConstraintViolation("identity already exists", {"field": "fingerprint"})
            if "username" in constraint:
                raise ConstraintViolation("username already taken", {"field": "username"})
            raise ConstraintViolation(
                "unexpected unique violation", {"constraint": constraint or None}
            )
        return self._user_from_row(user_row, code), self._identity_from_row(identity_row)

    # global identities
    def get_identity(self, identity_id: str) -> Optional[GlobalIdentity]:
        if not _valid_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM global.identities WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_local(
        self, territory_code: str, local_user_id: str
    ) -> Optional[GlobalIdentity]:
        code = normalize_territory_code(territory_code)
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM global.identities
                WHERE territory_code = %s AND local_user_id = %s
                """,
                (code, local_user_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_username(self, username: str) -> Optional[GlobalIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM global.identities WHERE username = %s", (username,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    # sessions
    def create_session(
        self, identity_id: str, token_hash: str, ttl_seconds: int
    ) -> Session:
        session = Session.new(identity_id, token_hash, ttl_seconds)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO global.sessions (id, identity_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        identity_id,
                        token_hash,
                        session.expires_at,
                        session.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session identity missing", {"identity_id": identity_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
        return session

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM global.sessions WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session_by_hash(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM global.sessions WHERE token_hash = %s RETURNING id",
                (token_hash,),
            ).fetchone()
        return row is not None

    def rotate_session(
        self, old_hash: str, identity_id: str, new_hash: str, ttl_seconds: int
    ) -> Optional[Session]:
        """Replace a session row; None when the old row was already taken."""
        session = Session.new(identity_id, new_hash, ttl_seconds)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # Row lock on delete serializes concurrent rotations of one token
                    deleted = conn.execute(
                        """
                        DELETE FROM global.sessions
                        WHERE token_hash = %s AND identity_id = %s
                        RETURNING id
                        """,
                        (old_hash, identity_id),
                    ).fetchone()
                    if not deleted:
                        return None
                    conn.execute(
                        """
                        INSERT INTO global.sessions (id, identity_id, token_hash, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (
                            session.id,
                            identity_id,
                            new_hash,
                            session.expires_at,
                            session.created_at,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
        return session

    # invitations
    def create_invitation(
        self,
        territory_code: str,
        *,
        token: str,
        token_type: str,
        max_uses: int,
        expires_at: datetime,
        email: Optional[str] = None,
        created_by_user_id: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> InvitationToken:
        schema = self._schema(territory_code)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    self._q(
                        """
                        INSERT INTO {schema}.invitation_tokens
                            (id, token, token_type, email, max_uses, created_by_user_id,
                             purpose, expires_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        schema,
                    ),
                    (
                        str(uuid.uuid4()),
                        token,
                        token_type,
                        email,
                        max_uses,
                        created_by_user_id,
                        purpose,
                        expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token collision", {"field": "token"})
        except errors.CheckViolation:
            raise ConstraintViolation("invitation violates type rules", {"field": "token_type"})
        return self._invitation_from_row(row)

    def get_invitation(self, territory_code: str, token_id: str) -> Optional[InvitationToken]:
        schema = self._schema(territory_code)
        if not _valid_uuid(token_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                self._q("SELECT * FROM {schema}.invitation_tokens WHERE id = %s", schema),
                (token_id,),
            ).fetchone()
        return self._invitation_from_row(row) if row else None

    def get_invitation_by_token(
        self, territory_code: str, token: str
    ) -> Optional[InvitationToken]:
        schema = self._schema(territory_code)
        with self._connect() as conn:
            row = conn.execute(
                self._q("SELECT * FROM {schema}.invitation_tokens WHERE token = %s", schema),
                (token,),
            ).fetchone()
        return self._invitation_from_row(row) if row else None

    def _consume_invitation(self, conn, schema: sql.Identifier, token_id: str) -> Optional[dict]:
        # Conditional increment: concurrent consumers cannot push current_uses past max_uses
        return conn.execute(
            self._q(
                """
                UPDATE {schema}.invitation_tokens
                SET current_uses = current_uses + 1,
                    is_active = (current_uses + 1) < max_uses
                WHERE id = %s
                  AND is_active
                  AND revoked_at IS NULL
                  AND current_uses < max_uses
                  AND expires_at > now()
                RETURNING *
                """,
                schema,
            ),
            (token_id,),
        ).fetchone()

    def _record_invitation_use(
        self,
        conn,
        schema: sql.Identifier,
        token_id: str,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        conn.execute(
            self._q(
                """
                INSERT INTO {schema}.invitation_uses
                    (id, token_id, used_by_user_id, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s)
                """,
                schema,
            ),
            (str(uuid.uuid4()), token_id, user_id, ip_address, user_agent),
        )

    def consume_invitation(
        self,
        territory_code: str,
        token_id: str,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[InvitationToken]:
        schema = self._schema(territory_code)
        if not _valid_uuid(token_id):
            return None
        with self._connect() as conn:
            with conn.transaction():
                row = self._consume_invitation(conn, schema, token_id)
                if not row:
                    return None
                self._record_invitation_use(
                    conn, schema, token_id, user_id, ip_address, user_agent
                )
        return self._invitation_from_row(row)

    def revoke_invitation(
        self, territory_code: str, token_id: str, requester_id: str
    ) -> Optional[InvitationToken]:
        schema = self._schema(territory_code)
        if not _valid_uuid(token_id) or not _valid_uuid(requester_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                self._q(
                    """
                    UPDATE {schema}.invitation_tokens
                    SET is_active = false,
                        revoked_at = COALESCE(revoked_at, now()),
                        revoked_by_user_id = COALESCE(revoked_by_user_id, %s)
                    WHERE id = %s AND created_by_user_id = %s
                    RETURNING *
                    """,
                    schema,
                ),
                (requester_id, token_id, requester_id),
            ).fetchone()
        return self._invitation_from_row(row) if row else None

    def list_invitations(self, territory_code: str, creator_id: str) -> List[InvitationToken]:
        schema = self._schema(territory_code)
        with self._connect() as conn:
            rows = conn.execute(
                self._q(
                    """
                    SELECT * FROM {schema}.invitation_tokens
                    WHERE created_by_user_id = %s
                    ORDER BY created_at DESC
                    """,
                    schema,
                ),
                (creator_id,),
            ).fetchall()
        return [self._invitation_from_row(row) for row in rows]

    def list_invitation_uses(self, territory_code: str, token_id: str) -> List[InvitationUse]:
        schema = self._schema(territory_code)
        if not _valid_uuid(token_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                self._q(
                    """
                    SELECT * FROM {schema}.invitation_uses
                    WHERE token_id = %s
                    ORDER BY used_at DESC
                    """,
                    schema,
                ),
                (token_id,),
            ).fetchall()
        return [self._use_from_row(row) for row in rows]
