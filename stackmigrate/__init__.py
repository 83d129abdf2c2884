"""
stackmigrate - Terraform workspace state to stack state migration.

This package reconciles workspace resource addresses with the components
declared in a stack configuration, drives a migration engine with the
resulting address map, and folds the engine's event stream into a single
stack state snapshot.
"""

__version__ = "0.1.0"
