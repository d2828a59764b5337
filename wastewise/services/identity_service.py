from __future__ import annotations

import hashlib
import os

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from wastewise.domain.models import (
    BootstrapAdminRequest,
    RegisterRequest,
    User,
    UserCreate,
    UserUpdate,
)
from wastewise.domain.roles import UserRole
from wastewise.infra.db import get_engine

PASSWORD_SALT = os.getenv("PASSWORD_SALT", "wastewise-dev-salt")


class IdentityError(Exception):
    pass


class NotFoundError(IdentityError):
    pass


class ConflictError(IdentityError):
    pass


class AuthError(IdentityError):
    pass


class IdentityService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        return hashlib.sha256(f"{PASSWORD_SALT}:{raw_password}".encode()).hexdigest()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def _insert_user(
        self,
        session: Session,
        *,
        email: str,
        password: str,
        full_name: str,
        role: UserRole,
        is_active: bool = True,
    ) -> User:
        user = User(
            email=self._normalize_email(email),
            password_hash=self._hash_password(password),
            full_name=full_name.strip(),
            role=role,
            is_active=is_active,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("email already registered") from exc
        session.refresh(user)
        return user

    def register_resident(self, payload: RegisterRequest) -> User:
        with self._session() as session:
            return self._insert_user(
                session,
                email=payload.email,
                password=payload.password,
                full_name=payload.full_name,
                role=UserRole.RESIDENT,
            )

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            existing = session.exec(select(User).where(User.role == UserRole.ADMIN)).first()
            if existing is not None:
                raise ConflictError("admin already bootstrapped")
            return self._insert_user(
                session,
                email=payload.email,
                password=payload.password,
                full_name=payload.full_name,
                role=UserRole.ADMIN,
            )

    def create_user(self, payload: UserCreate) -> User:
        with self._session() as session:
            return self._insert_user(
                session,
                email=payload.email,
                password=payload.password,
                full_name=payload.full_name,
                role=payload.role,
                is_active=payload.is_active,
            )

    def get_user(self, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def update_user(self, user_id: str, payload: UserUpdate) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if payload.full_name is not None:
                user.full_name = payload.full_name.strip()
            if payload.is_active is not None:
                user.is_active = payload.is_active
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def list_collectors(self, *, active_only: bool = True) -> list[User]:
        with self._session() as session:
            statement = select(User).where(User.role == UserRole.COLLECTOR)
            if active_only:
                statement = statement.where(User.is_active == True)  # noqa: E712
            rows = list(session.exec(statement).all())
            return sorted(rows, key=lambda item: item.full_name)

    def login(self, email: str, password: str) -> User:
        with self._session() as session:
            statement = select(User).where(User.email == self._normalize_email(email))
            user = session.exec(statement).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if user.password_hash != self._hash_password(password):
                raise AuthError("invalid credentials")
            return user
