"""Shared test fixtures for keystone_etl test suite.

Provides moto-based S3 mocks, sample leaderboard payloads and the in-memory
database from ``fakes.py``.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List

import boto3
import pytest
from moto import mock_aws

from fakes import COMPLETED_MS, FakeDatabase, MutableClock, make_group


# ---------------------------------------------------------------------------
# AWS credential safety: prevent accidental real AWS calls
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True, scope="session")
def aws_credentials():
    """Set fake AWS credentials for the entire test session."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    yield
    for key in (
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SECURITY_TOKEN",
        "AWS_SESSION_TOKEN",
        "AWS_DEFAULT_REGION",
    ):
        os.environ.pop(key, None)


@pytest.fixture()
def s3_client():
    """Moto S3 with a 'keystone-shards' bucket; yields the boto3 client."""
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket="keystone-shards")
        yield client


# ---------------------------------------------------------------------------
# Sample upstream payloads
# ---------------------------------------------------------------------------

@pytest.fixture()
def sample_groups() -> List[Dict[str, Any]]:
    return [
        make_group(ranking=1, level=22, duration=1_600_000, rating=245.5),
        make_group(ranking=2, level=20, duration=1_500_000),
        make_group(ranking=3, level=18, duration=2_000_000, completed=COMPLETED_MS + 60_000),
    ]


# ---------------------------------------------------------------------------
# In-memory database and clocks
# ---------------------------------------------------------------------------

@pytest.fixture()
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()
