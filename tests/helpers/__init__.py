"""Test helpers for Abraxas tests."""

from tests.helpers.fake_github import FakeGitHub
from tests.helpers.fake_sandbox_provider import FakeSandboxProvider

__all__ = ["FakeGitHub", "FakeSandboxProvider"]
