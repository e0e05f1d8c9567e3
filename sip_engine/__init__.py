"""SIP engine: recurring trade scheduling and execution.

Keeps a durable schedule of recurring triggers in step with the plan store,
executes plans with bounded retries, and removes the schedules of plans
that were deleted, paused or ran out of funds.
"""

__version__ = "0.1.0"
