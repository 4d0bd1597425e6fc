# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across the test suite."""

from collections.abc import Iterator

import pytest

from stowage.client import Client
from stowage.config import ClientConfig
from stowage.credentials import StaticCredentials
from stowage.dotenv_loader import reset_dotenv_state
from stowage.logging import SecretFilter
from stowage.multipart import MiB
from stowage.retry import RetryPolicy

from tests.fakes import FakeS3, FakeTransport
from tests.vectors import ACCESS_KEY_ID, SECRET_ACCESS_KEY


@pytest.fixture(autouse=True)
def _reset_global_state() -> Iterator[None]:
    """Keep the secret registry and dotenv state test-local."""
    SecretFilter.clear_secrets()
    reset_dotenv_state()
    yield
    SecretFilter.clear_secrets()
    reset_dotenv_state()


@pytest.fixture
def credentials() -> StaticCredentials:
    return StaticCredentials(ACCESS_KEY_ID, SECRET_ACCESS_KEY)


@pytest.fixture
def config(credentials: StaticCredentials) -> ClientConfig:
    """Config with fast retries and the smallest multipart threshold."""
    return (
        ClientConfig.builder()
        .endpoint("https://s3.example.com")
        .credentials(credentials)
        .retry(RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0))
        .multipart_threshold(5 * MiB)
        .concurrency(2)
        .build()
    )


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def transport(fake_s3: FakeS3) -> FakeTransport:
    return FakeTransport(fake_s3)


@pytest.fixture
def client(config: ClientConfig, transport: FakeTransport) -> Client:
    return Client(config, transport=transport)
