"""
Careflow: Telehealth Intake-to-Consultation Orchestration

Tracks where a patient is in the telehealth journey, how urgently they
must be seen, and which provider should see them.
"""

__version__ = "0.1.0"
__author__ = "Careflow Team"
