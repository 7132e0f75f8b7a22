"""bulk-export test suite.

- unit/: one module per library component, plus coordinator scenarios
  driven end to end through the fake provider in conftest.py
"""
