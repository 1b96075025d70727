"""Tests for credential encryption."""

import os

import pytest
from cryptography.fernet import InvalidToken

from agentless.core.encryption import (
    decrypt_password,
    encrypt_password,
    read_secret_file,
    write_secret_file,
)


def test_round_trip():
    encrypted = encrypt_password("s3cret!", "key-1")

    assert encrypted != "s3cret!"
    assert decrypt_password(encrypted, "key-1") == "s3cret!"


def test_wrong_key():
    encrypted = encrypt_password("s3cret!", "key-1")

    with pytest.raises(InvalidToken):
        decrypt_password(encrypted, "key-2")


def test_secret_file(tmp_path):
    path = write_secret_file(tmp_path / "session" / "session.secret", "s3cret!", "key-1")

    assert os.stat(path).st_mode & 0o777 == 0o600
    assert "s3cret!" not in path.read_text()
    assert read_secret_file(path, "key-1") == "s3cret!"
