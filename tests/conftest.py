"""
Pytest configuration and shared fixtures
These fixtures are available to all test files
"""

import copy
import json
import pytest
from typing import Dict, Any

from solders.pubkey import Pubkey

from anchor_lens.core.metrics import MetricsCollector, init_metrics
from anchor_lens.core.schema import Schema
from anchor_lens.core.schema_cache import SchemaCache


# Legacy-layout interface document exercising every type kind
SAMPLE_IDL: Dict[str, Any] = {
    "version": "0.1.0",
    "name": "lens_demo",
    "instructions": [
        {
            "name": "initialize",
            "accounts": [
                {"name": "state", "isMut": True, "isSigner": False},
                {"name": "authority", "isMut": False, "isSigner": True},
                {"name": "systemProgram", "isMut": False, "isSigner": False}
            ],
            "args": [
                {"name": "amount", "type": "u64"},
                {"name": "label", "type": "string"}
            ]
        },
        {
            "name": "setMode",
            "accounts": [
                {
                    "name": "admin",
                    "accounts": [
                        {"name": "state", "isMut": True, "isSigner": False},
                        {"name": "authority", "isMut": False, "isSigner": True}
                    ]
                },
                {"name": "clock", "isMut": False, "isSigner": False}
            ],
            "args": [
                {"name": "mode", "type": {"defined": "Mode"}}
            ]
        }
    ],
    "accounts": [
        {
            "name": "Foo",
            "type": {
                "kind": "struct",
                "fields": [{"name": "owner", "type": "publicKey"}]
            }
        },
        {
            "name": "State",
            "type": {
                "kind": "struct",
                "fields": [
                    {"name": "authority", "type": "publicKey"},
                    {"name": "total", "type": "u128"},
                    {"name": "bumps", "type": {"array": ["u8", 2]}},
                    {"name": "history", "type": {"vec": "u16"}},
                    {"name": "note", "type": {"option": "string"}},
                    {"name": "enabled", "type": "bool"},
                    {"name": "mode", "type": {"defined": "Mode"}}
                ]
            }
        }
    ],
    "types": [
        {
            "name": "Mode",
            "type": {
                "kind": "enum",
                "variants": [
                    {"name": "Fixed", "fields": [{"name": "rate", "type": "u64"}]},
                    {"name": "Ratio", "fields": ["u16", "u16"]},
                    {"name": "Paused"}
                ]
            }
        }
    ],
    "events": [
        {
            "name": "Deposited",
            "fields": [
                {"name": "user", "type": "publicKey", "index": False},
                {"name": "amount", "type": "u64", "index": False}
            ]
        }
    ]
}

# Newer-layout document: metadata block, explicit discriminators, bodies under "types"
NEW_FORMAT_IDL: Dict[str, Any] = {
    "address": "Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS",
    "metadata": {"name": "counter", "version": "0.2.0", "spec": "0.1.0"},
    "instructions": [
        {
            "name": "increment",
            "discriminator": [11, 18, 104, 9, 104, 174, 59, 33],
            "accounts": [
                {"name": "counter", "writable": True},
                {"name": "authority", "signer": True}
            ],
            "args": [{"name": "by", "type": "u32"}]
        }
    ],
    "accounts": [
        {"name": "Counter", "discriminator": [255, 176, 4, 245, 188, 253, 124, 25]}
    ],
    "events": [
        {"name": "Incremented", "discriminator": [1, 2, 3, 4, 5, 6, 7, 8]}
    ],
    "types": [
        {
            "name": "Counter",
            "type": {
                "kind": "struct",
                "fields": [
                    {"name": "count", "type": "u64"},
                    {"name": "authority", "type": "pubkey"}
                ]
            }
        },
        {
            "name": "Incremented",
            "type": {
                "kind": "struct",
                "fields": [{"name": "count", "type": "u64"}]
            }
        }
    ]
}


@pytest.fixture
def sample_idl() -> Dict[str, Any]:
    """Fresh copy of the legacy sample document, safe to modify per test"""
    return copy.deepcopy(SAMPLE_IDL)


@pytest.fixture
def new_format_idl() -> Dict[str, Any]:
    return copy.deepcopy(NEW_FORMAT_IDL)


@pytest.fixture
def sample_schema(sample_idl) -> Schema:
    return Schema.build(sample_idl)


@pytest.fixture
def new_format_schema(new_format_idl) -> Schema:
    return Schema.build(new_format_idl)


@pytest.fixture
def program_id() -> Pubkey:
    """Program id the sample schema is registered under"""
    return Pubkey.from_string("Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS")


@pytest.fixture
def schema_cache(sample_schema, program_id) -> SchemaCache:
    """Schema cache preloaded with the sample schema"""
    cache = SchemaCache()
    cache.insert(program_id, sample_schema)
    return cache


@pytest.fixture
def idl_file(sample_idl, tmp_path) -> str:
    """Sample document written to a temporary JSON file"""
    path = tmp_path / "lens_demo.json"
    path.write_text(json.dumps(sample_idl))
    return str(path)


@pytest.fixture
def test_config_dict(idl_file, program_id) -> Dict[str, Any]:
    """
    Sample configuration dictionary for testing

    Returns valid config that can be modified per test
    """
    return {
        "logging": {
            "level": "DEBUG",
            "format": "json",
            "output_file": None
        },
        "metrics": {
            "enable_histogram": True,
            "histogram_buckets": [1, 5, 10, 50, 100]
        },
        "decoder": {
            "enum_strategy": "tagged",
            "max_type_depth": 32,
            "max_call_depth": 4,
            "allow_remaining_accounts": False
        },
        "idls": [
            {"program_id": str(program_id), "path": idl_file}
        ]
    }


@pytest.fixture
def test_config_file(test_config_dict, tmp_path):
    """
    Create a temporary config file for testing

    Returns path to temporary YAML config file
    """
    import yaml

    config_file = tmp_path / "test_config.yml"
    with open(config_file, 'w') as f:
        yaml.dump(test_config_dict, f)

    return str(config_file)


@pytest.fixture
def metrics_collector() -> MetricsCollector:
    """
    Fresh global metrics collector for each test

    Modules read the global collector at call time, so counters recorded
    during the test land here.
    """
    collector = init_metrics(enable_histogram=True)
    yield collector
    # Clean up after test
    collector.reset()


@pytest.fixture
def temp_log_file(tmp_path):
    """
    Create temporary log file path

    Returns path to temporary log file
    """
    log_file = tmp_path / "test.log"
    return str(log_file)


def pytest_configure(config):
    """Register custom pytest markers"""
    config.addinivalue_line(
        "markers", "roundtrip: encode/decode round-trip tests"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running (>5 seconds)"
    )
