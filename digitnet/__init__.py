"""
digitnet - weighted factor-graph ensemble for 28x28 digit classification.

Leaf scorers produce one log-likelihood-like score per class; fusion nodes
combine them; an inference engine turns the fused vector into a prediction
(directly, or by iterating a belief to a fixed point); an online learner
adapts the fusion weights from labeled feedback.
"""

__version__ = "0.1.0"
