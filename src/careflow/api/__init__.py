"""
Careflow API

HTTP surface over the flow state machine.
"""

from careflow.api.main import create_app

__all__ = ["create_app"]
