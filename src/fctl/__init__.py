"""
fctl

Exports environments from the control plane as self-contained Terraform
configurations and applies them locally.
"""

__version__ = "0.1.0"
