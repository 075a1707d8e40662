"""
medsync
Medication event-sourcing and orchestration engine
"""

__version__ = "0.1.0"
