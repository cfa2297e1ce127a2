"""
Infra Reconciler

A declarative resource reconciliation engine prototype.
Converges remote infrastructure (gateways, segments, firewall rules,
virtual machines) to a YAML declaration in dependency order.
"""

__version__ = "1.0.0"
__author__ = "Infra Reconciler Team"
