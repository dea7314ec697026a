# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Pytest configuration and shared fixtures for codescope tests.
"""

from pathlib import Path

import pytest

from codescope.analysis import Dependency, ParsedFile, Symbol
from codescope.config import EmbeddingSettings, SearchSettings
from codescope.indexer import CodeIndex
from codescope.storage.database import IndexStore
from codescope.storage.trigram import ROCKSDICT_AVAILABLE

LOGIN_TS = """import { hashPassword } from "../utils/crypto";

export function validateUser(name: string, password: string): boolean {
  // check the user credentials
  const hashed = hashPassword(password);
  return name.length > 0 && hashed.length > 0;
}

export class LoginController {
  handleLogin(request: Request) {
    return validateUser(request.user, request.password);
  }
}
"""

CRYPTO_TS = """export function hashPassword(value: string): string {
  return value.split("").reverse().join("");
}
"""

README_MD = """# Project

The login flow validates users before issuing tokens.
"""

MESSAGES_TS = """export const greeting = "안녕하세요 사용자";
export const farewell = "안녕히 가세요";
"""


def make_sample_files() -> list[ParsedFile]:
    login = "src/auth/login.ts"
    crypto = "src/utils/crypto.ts"
    messages = "src/i18n/messages.ts"
    return [
        ParsedFile(
            path=login,
            content=LOGIN_TS,
            symbols=[
                Symbol(
                    name="validateUser",
                    kind="function",
                    file_path=login,
                    line=3,
                    end_line=7,
                    signature="validateUser(name: string, password: string): boolean",
                    doc="check the user credentials",
                ),
                Symbol(name="LoginController", kind="class", file_path=login, line=9, end_line=13),
                Symbol(
                    name="handleLogin",
                    kind="method",
                    file_path=login,
                    line=10,
                    end_line=12,
                    signature="handleLogin(request: Request)",
                    scope="LoginController",
                ),
            ],
            dependencies=[Dependency(source=login, target=crypto)],
            exports=["validateUser", "LoginController"],
        ),
        ParsedFile(
            path=crypto,
            content=CRYPTO_TS,
            symbols=[
                Symbol(
                    name="hashPassword",
                    kind="function",
                    file_path=crypto,
                    line=1,
                    end_line=3,
                    signature="hashPassword(value: string): string",
                )
            ],
            exports=["hashPassword"],
        ),
        ParsedFile(path="docs/README.md", content=README_MD),
        ParsedFile(
            path=messages,
            content=MESSAGES_TS,
            symbols=[
                Symbol(name="greeting", kind="const", file_path=messages, line=1),
                Symbol(name="farewell", kind="const", file_path=messages, line=2),
            ],
            exports=["greeting", "farewell"],
        ),
    ]


requires_rocksdict = pytest.mark.skipif(
    not ROCKSDICT_AVAILABLE, reason="rocksdict is required for the trigram store"
)


@pytest.fixture
def sample_files():
    return make_sample_files()


@pytest.fixture
def test_index_path(tmp_path) -> Path:
    """Create a temporary index directory."""
    index_path = tmp_path / ".test_index"
    index_path.mkdir(parents=True, exist_ok=True)
    return index_path


@pytest.fixture
def store(tmp_path):
    s = IndexStore(tmp_path / "store" / "index.db")
    yield s
    s.close()


@pytest.fixture
def local_embeddings() -> EmbeddingSettings:
    return EmbeddingSettings(provider="local", model="hash-64", dims=64, timeout_seconds=5.0)


@pytest.fixture
def code_index(test_index_path, sample_files, local_embeddings):
    """A CodeIndex over the sample files with local hash embeddings."""
    if not ROCKSDICT_AVAILABLE:
        pytest.skip("rocksdict is required for the trigram store")
    index = CodeIndex(
        test_index_path,
        embedding_settings=local_embeddings,
        search_settings=SearchSettings(chunk_lines=20, chunk_overlap=5),
    )
    for parsed in sample_files:
        index.index_file(parsed)
    yield index
    index.close()


@pytest.fixture
def plain_index(test_index_path, sample_files):
    """Same sample files with embeddings disabled."""
    if not ROCKSDICT_AVAILABLE:
        pytest.skip("rocksdict is required for the trigram store")
    index = CodeIndex(test_index_path)
    for parsed in sample_files:
        index.index_file(parsed)
    yield index
    index.close()
