"""Deal scoring module -- Deal Health Model and Scoring Orchestrator.

DealHealthModel turns one deal's data into a validated AIScoreResponse;
ScoringOrchestrator selects candidates, scores them sequentially and
serves score reads and aggregate statistics.
"""
