"""Shared pytest fixtures for passify tests."""

from __future__ import annotations

import json
import os

import boto3
import pytest
from moto import mock_aws

from passify.codec import loads

SAMPLE_JSON = """{
  "binary": [245, 107, 95, 100],
  "nested": {
    "inner": {"deep": {"foo": "bar"}},
    "sibling": "inner_sibling"
  },
  "sibling": "outer_sibling"
}"""

BUCKET = "passify-test"


@pytest.fixture()
def sample_plain():
    """The sample tree as plain JSON-compatible objects."""
    return json.loads(SAMPLE_JSON)


@pytest.fixture()
def sample_tree():
    """A tree with binary, nested and sibling secrets."""
    return loads(SAMPLE_JSON)


@pytest.fixture()
def aws_credentials():
    """Ensure moto doesn't try to use real AWS credentials."""
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
    os.environ.setdefault("AWS_SESSION_TOKEN", "testing")


@pytest.fixture()
def s3_client(aws_credentials):
    """A moto-mocked S3 client with an empty bucket."""
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=BUCKET)
        yield client
