"""Ralph - correctness-forcing work item executor.

Drives a work item through repeated attempts at an external implementation step,
gated by verifier commands, until its Definition of Done passes.
"""

__version__ = "0.1.0"
