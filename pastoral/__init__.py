"""
Pastoral Care Pipeline

Detects changes in church members' data, scores their pastoral urgency and
turns them into initiatives (message, call, visit) for each member's leader.

Usage:
    from pastoral.pipeline import create_pipeline
    from pastoral.server import create_app
    from pastoral.common.schemas import PersonChange, Initiative
"""

__version__ = "0.1.0"
