"""
Keelan Test Suite
=================

Test Categories:
    - test_basic.py: Import tests and basic functionality
    - test_layers.py: Layer chain resolution
    - test_filesystem.py: Overlay mount/unmount ordering and idempotency
    - test_keelanfile.py: Keelanfile validation
    - test_executor.py: Command execution and output streaming
    - test_builder.py: Build pipeline, archives, failure cleanup
    - test_metadata.py: Ship state transitions
    - test_protocol.py: Control message encoding
    - test_supervisor.py: Liveness probes and exit tracking
    - test_daemon.py: Control socket handlers and reconciliation
    - test_ships.py: Client side ship operations
    - test_cli.py: Command line parsing

Running Tests:
    pytest tests/ -v

Note:
    Mounting and chroot need root. The suite swaps those for fakes (see
    conftest.py) so it runs unprivileged; the few tests that really mount
    are marked with @pytest.mark.skipif(os.geteuid() != 0).
"""

import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
