"""
Tally Modules.

Thin orchestration layers over the Tally Kernel and Engines.
Each module contains:
- Domain models (the nouns)
- Workflows (state machines)
- Configuration schemas (policy and settings)
- ORM models and the module service (transaction boundary)

Modules:
- Counting: Physical inventory campaigns, blind stage counts, serial reads,
  audit review, stock commit and ERP migration

Actual rule evaluation lives in the engines.
"""

from tally_modules import counting

__all__ = [
    "counting",
]
