"""
Evaluation package: the evaluator facade plus its timeout and batch helpers.
"""
