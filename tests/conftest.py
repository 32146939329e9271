"""Shared pytest fixtures for unit and integration tests.

This module provides:
- Temporary directory fixtures for file I/O testing
- Configuration fixtures for parameter testing
- An in-memory registration database behind a fake connection pool
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Dict, Generator

import pytest
import yaml

from tests.fixtures.sample_input import FakePool, FakeRegistrationDB


@pytest.fixture
def tmp_test_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after each test.

    Real-world significance:
    - Isolates file I/O tests from each other
    - Prevents test artifacts from polluting the file system
    - Required for testing lock files, cleanup and merge steps

    Yields
    ------
    Path
        Absolute path to temporary directory (automatically deleted after test)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def tmp_output_structure(tmp_test_dir: Path) -> Dict[str, Path]:
    """Create the folder layout the pipeline expects.

    Real-world significance:
    - results/ is the shared folder the report engine writes into
    - reports/ holds the report templates
    - logs/ receives the rolling log file

    Returns
    -------
    Dict[str, Path]
        Keys: 'root', 'results', 'reports', 'logs'
    """
    for name in ("results", "reports", "logs"):
        (tmp_test_dir / name).mkdir(exist_ok=True)

    return {
        "root": tmp_test_dir,
        "results": tmp_test_dir / "results",
        "reports": tmp_test_dir / "reports",
        "logs": tmp_test_dir / "logs",
    }


@pytest.fixture
def default_config(tmp_output_structure: Dict[str, Path]) -> Dict[str, Any]:
    """Provide a minimal valid pipeline configuration for testing.

    Real-world significance:
    - Matches the production config schema (config/parameters.yaml)
    - Timings are shortened so convergence and sleeps finish instantly
    - Bird delivery is disabled unless a test sets bird.access_key

    Returns
    -------
    Dict[str, Any]
        Configuration dict with all standard sections
    """
    return {
        "database": {
            "user": "ldm",
            "password": "secret",
            "connect_string": "ldmdb",
            "pool_min": 1,
            "pool_max": 2,
            "connect_timeout_seconds": 5,
        },
        "paths": {
            "results_folder": str(tmp_output_structure["results"]),
            "reports_path": str(tmp_output_structure["reports"]),
            "logs_folder": str(tmp_output_structure["logs"]),
        },
        "processing": {
            "batch_interval_seconds": 120,
            "lock_stale_seconds": 300,
            "convergence_timeout_seconds": 2,
            "convergence_poll_seconds": 0.01,
            "convergence_stable_samples": 1,
            "settle_delay_seconds": 0,
            "mtime_tolerance_seconds": 2,
            "mark_processed_timeout_seconds": 5,
        },
        "reports": {
            "rwrun_path": "rwrun60",
            "printed_by": "Baraka",
            "group_template": "new_test.rep",
            "timeout_seconds": 60,
            "success_exit_codes": [0, 3],
        },
        "merge": {
            "ghostscript_path": "gs",
            "timeout_seconds": 120,
            "artifact_prefix": "BL",
        },
        "bird": {
            "base_url": "https://api.bird.test",
            "access_key": "",
            "workspace_id": "ws-1",
            "channel_id": "ch-1",
            "template_project_id": "proj-1",
            "template_version": "v1",
            "locale": "ar",
        },
        "whatsapp": {
            "presign_timeout_seconds": 30,
            "upload_timeout_seconds": 60,
            "send_timeout_seconds": 30,
        },
        "phone": {"default_country_code": "+20"},
        "logging": {"level": "INFO", "backup_count": 3},
    }


@pytest.fixture
def config_file(tmp_test_dir: Path, default_config: Dict[str, Any]) -> Path:
    """Create a temporary config file with default configuration.

    Real-world significance:
    - Tests that need to load config from disk can use this fixture
    - Enables testing of config loading, validation and CLI startup

    Returns
    -------
    Path
        Path to created YAML config file
    """
    config_path = tmp_test_dir / "parameters.yaml"
    with open(config_path, "w") as f:
        yaml.dump(default_config, f)
    return config_path


@pytest.fixture
def fake_db() -> FakeRegistrationDB:
    """Provide an empty in-memory registration database.

    Real-world significance:
    - Tests add registrations with group/mega codes and a patient contact
    - Final flag values can be asserted after a batch
    """
    return FakeRegistrationDB()


@pytest.fixture
def fake_pool(fake_db: FakeRegistrationDB) -> FakePool:
    """Provide a connection pool answering from ``fake_db``."""
    return FakePool(fake_db)
