"""
The refinement loop: validator, convergence policy, orchestrator and run controller.

Files in this package may import from:
  - loopforge.models.*   (records and enums)
  - loopforge.services.* (model transport, token accounting)
  - standard library / third-party packages

Files in this package must NOT import from:
  - loopforge.api.*
"""
