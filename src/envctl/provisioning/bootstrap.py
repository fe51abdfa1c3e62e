"""Bootstrap (cloud-init) payload builders.

The orchestrator takes any ``Callable[[EnvironmentRecord], str]``. The
gateway base64-encodes the returned text.
"""

from __future__ import annotations

from typing import Callable

from envctl.environments.model import EnvironmentRecord

BootstrapBuilder = Callable[[EnvironmentRecord], str]


def minimal_cloud_config(environment: EnvironmentRecord) -> str:
    """Set the hostname and nothing else."""
    return (
        '#cloud-config\n'
        f'hostname: {environment.slug}\n'
        f'fqdn: {environment.hostname}\n'
        'preserve_hostname: false\n'
    )
