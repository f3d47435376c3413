from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import PasswordResetToken, Role
from periods import local_now
from schemas import RegisterIn
from security import generate_access_token, validate_access_token
from services import AuthError, AuthService, ConflictError


def _register(auth: AuthService, name: str = "alice", **extra):
    return auth.register(
        RegisterIn(
            username=name, email=f"{name}@ledger.io", password="s3cret!", **extra
        )
    )


def test_register_rejects_duplicate_username_and_email() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        auth = AuthService(session)
        user = _register(auth)
        assert user.role == Role.owner
        assert user.password_hash != "s3cret!"

        with pytest.raises(ConflictError):
            _register(auth)
        with pytest.raises(ConflictError):
            auth.register(
                RegisterIn(username="alice2", email="ALICE@ledger.io", password="s3cret!")
            )

        clerk = _register(auth, "clerk", role=Role.accountant)
        assert clerk.role == Role.accountant


def test_login_issues_token_for_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        auth = AuthService(session)
        user = _register(auth)

        with pytest.raises(AuthError):
            auth.login("alice", "wrong-password")
        with pytest.raises(AuthError):
            auth.login("nobody", "s3cret!")

        logged_in, token = auth.login("alice", "s3cret!")
        assert logged_in.id == user.id
        assert validate_access_token(token) == user.id


def test_access_token_validation() -> None:
    token = generate_access_token(7)
    assert validate_access_token(token) == 7
    assert validate_access_token(token + "x") is None
    assert validate_access_token("not-a-token") is None


def test_password_reset_token_is_single_use() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        auth = AuthService(session)
        _register(auth)

        assert auth.request_password_reset("unknown@ledger.io") is None

        first = auth.request_password_reset("alice@ledger.io")
        first_token = first.token
        second = auth.request_password_reset("ALICE@ledger.io")
        second_token = second.token
        assert first_token != second_token
        tokens = session.scalars(select(PasswordResetToken)).all()
        assert len(tokens) == 1

        with pytest.raises(ValueError):
            auth.reset_password(first_token, "n3w-pass")

        auth.reset_password(second_token, "n3w-pass")
        auth.login("alice", "n3w-pass")
        with pytest.raises(AuthError):
            auth.login("alice", "s3cret!")

        with pytest.raises(ValueError):
            auth.reset_password(second_token, "another")


def test_expired_reset_token_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        auth = AuthService(session)
        _register(auth)
        reset = auth.request_password_reset("alice@ledger.io")
        reset.expires_at = local_now() - timedelta(minutes=1)
        session.commit()

        with pytest.raises(ValueError):
            auth.reset_password(reset.token, "n3w-pass")
