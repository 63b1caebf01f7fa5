# file: version.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import hashlib
from pathlib import Path

__version__ = '0.1.0'


def compute_fingerprint(package_root: Path = Path(__file__).resolve().parent) -> str:
    """
    Computes a short fingerprint identifying this exact build of the package.

    The digest covers the package version and the bytes of every Python module
    in the package, so a daemon started from an older checkout (or an older
    installed release) is detected as incompatible by a newer client.

    Args:
        package_root (Path): The directory holding the package sources.

    Returns:
        str: The first 12 hex characters of the sha256 digest.
    """
    digest = hashlib.sha256(__version__.encode('utf-8'))
    for source_file in sorted(package_root.rglob('*.py')):
        digest.update(source_file.relative_to(package_root).as_posix().encode('utf-8'))
        digest.update(source_file.read_bytes())
    return digest.hexdigest()[:12]


# Embedded in session metadata by the daemon and compared by the client.
VERSION_FINGERPRINT = compute_fingerprint()
