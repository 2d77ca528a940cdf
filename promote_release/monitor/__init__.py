"""Terminal rendering of run outcomes.

renderer
    ``OutcomeRenderer`` turns ``RunOutcome`` into a Rich panel with the
    stage-tagged progress trace.
"""
