"""
Pixel classifiers.

# ! TO ADD A NEW CLASSIFIER !
# 1. subclass BaseClassifier in a new module of this package
# 2. implement train / save / load (predict and classify are inherited)
# 3. import it here and add it to __all__
"""

from .base_model import BaseClassifier, TrainedModel
from .random_forest_model import RandomForestPixelClassifier, classify, predict_samples, train

__all__ = [
    'BaseClassifier',
    'TrainedModel',
    'RandomForestPixelClassifier',
    'train',
    'classify',
    'predict_samples',
]
