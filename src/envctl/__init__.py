"""envctl: environment provisioning orchestrator.

Provisions and tears down compute instances and their DNS records for
tenant-owned environments, driven by a durable job queue.
"""

__version__ = "0.1.0"
