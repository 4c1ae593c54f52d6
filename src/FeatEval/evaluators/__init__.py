"""
Model trainers for the feature evaluation framework.

This module contains trainer adapters that implement the ModelTrainer interface
the FeatureEvaluator drives for every fold.
"""

from .lgbm import LightGBMFeatureStrength, LightGBMTrainer, LightGBMTreeModel

__all__ = [
    "LightGBMTrainer",
    "LightGBMTreeModel",
    "LightGBMFeatureStrength",
]
