"""
Keelan: a minimal container engine.

- Crates: layered root filesystems built from a Keelanfile on OverlayFS
- Reproducible, content-addressed crate archives
- Ships: supervised processes chrooted into a crate
- A daemon owning ship processes behind a JSON control socket
- Liveness reconciliation between the OS and the ship records

License: MIT
"""

__version__ = "0.1.0"
