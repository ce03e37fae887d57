"""Random Forest classifier for pixel-wise mangrove mapping."""

import numpy as np
from typing import Optional, Sequence
from pathlib import Path
import pickle
from sklearn.ensemble import RandomForestClassifier

from mangrove_mapper.class_models.base_model import BaseClassifier, TrainedModel
from mangrove_mapper.cste import ClassInfo, ClassifierConfig, GeneralConfig
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import RasterTile
from mangrove_mapper.training_samples import TrainingSet

log = get_logger("random_forest")


class RandomForestPixelClassifier(BaseClassifier):
    """
    Random Forest classifier over per-pixel feature vectors.

    Deterministic for a fixed random_state.
    """

    def __init__(
        self,
        tree_count: int = ClassifierConfig.TREE_COUNT,
        features_per_split: int = ClassifierConfig.FEATURES_PER_SPLIT,
        random_state: int = GeneralConfig.RANDOM_SEED,
        n_jobs: int = GeneralConfig.NB_JOBS,
        class_ids: Sequence[int] = tuple(ClassInfo.CLASS_NAMES),
        class_weight: Optional[str] = None,
    ):
        """
        Initialize Random Forest model.

        Args:
            tree_count: Number of trees in the forest
            features_per_split: Number of features considered at each split
            random_state: Random seed for reproducibility
            n_jobs: Number of parallel jobs (-1 = use all cores)
            class_ids: Classes that must be present in the training set
            class_weight: Passed to scikit-learn ('balanced' or None)
        """
        super().__init__('RandomForest', class_ids)

        if tree_count < 1:
            raise ConfigurationError(f"tree_count must be >= 1, got {tree_count}")
        if features_per_split < 1:
            raise ConfigurationError(f"features_per_split must be >= 1, got {features_per_split}")

        self.tree_count = tree_count
        self.features_per_split = features_per_split
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.class_weight = class_weight

        #! Store configuration
        self.config = {
            'tree_count': tree_count,
            'features_per_split': features_per_split,
            'random_state': random_state,
            'n_jobs': n_jobs,
            'class_ids': list(self.class_ids),
            'class_weight': class_weight,
        }

    def train(self, training_set: TrainingSet, feature_band_names: Sequence[str]) -> TrainedModel:
        """
        Train the Random Forest on labelled samples.

        Args:
            training_set: Training samples (every configured class must be present)
            feature_band_names: Bands used as features

        Returns:
            Trained model

        Raises:
            ConfigurationError: Empty class, missing feature band, empty band list
        """
        feature_band_names = tuple(feature_band_names)
        if not feature_band_names:
            raise ConfigurationError("At least one feature band is required")
        self.check_training_set(training_set)

        X_train = training_set.feature_matrix(feature_band_names)
        y_train = training_set.labels()

        #! Clip features per split to the number of available features
        max_features = min(self.features_per_split, len(feature_band_names))

        estimator = RandomForestClassifier(
            n_estimators=self.tree_count,
            max_features=max_features,
            n_jobs=self.n_jobs,
            random_state=self.random_state,
            class_weight=self.class_weight,
        )

        log.info(
            f"Training Random Forest: trees={self.tree_count}, features/split={max_features}, "
            f"samples={len(y_train)}, features={list(feature_band_names)}"
        )
        estimator.fit(X_train, y_train)

        #! Compute training accuracy
        train_acc = float(estimator.score(X_train, y_train))
        log.info(f"Training accuracy: {train_acc:.4f}")

        metrics = {
            'train_accuracy': train_acc,
            'feature_importance': dict(zip(feature_band_names, estimator.feature_importances_.tolist())),
            'n_samples_used': int(len(y_train)),
        }

        return TrainedModel(
            estimator=estimator,
            feature_band_names=feature_band_names,
            class_ids=tuple(int(c) for c in estimator.classes_),
            config={**self.config, 'max_features': max_features},
            metrics=metrics,
        )

    def save(self, model: TrainedModel, save_dir: str) -> None:
        """
        Save model and configuration.

        Args:
            model: Trained model
            save_dir: Directory to save model artifacts
        """
        save_path = Path(save_dir)
        save_path.mkdir(parents=True, exist_ok=True)

        #! Save model with pickle
        model_path = save_path / 'random_forest.pkl'
        with open(model_path, 'wb') as f:
            pickle.dump(model, f)
        log.info(f"Saved model to {model_path}")

        #! Save configuration
        self._save_config(
            {**model.config, 'feature_band_names': list(model.feature_band_names)},
            save_dir,
        )

    def load(self, save_dir: str) -> TrainedModel:
        """
        Load model and configuration.

        Args:
            save_dir: Directory containing model artifacts
        """
        #! Load configuration
        self.config = self._load_config(save_dir)

        #! Load model
        model_path = Path(save_dir) / 'random_forest.pkl'
        with open(model_path, 'rb') as f:
            model = pickle.load(f)
        log.info(f"Loaded model from {model_path}")
        return model


def train(
    training_set: TrainingSet,
    feature_band_names: Sequence[str],
    tree_count: int = ClassifierConfig.TREE_COUNT,
    features_per_split: int = ClassifierConfig.FEATURES_PER_SPLIT,
    random_state: int = GeneralConfig.RANDOM_SEED,
) -> TrainedModel:
    """Train a Random Forest with the default configuration."""
    classifier = RandomForestPixelClassifier(
        tree_count=tree_count,
        features_per_split=features_per_split,
        random_state=random_state,
    )
    return classifier.train(training_set, feature_band_names)


def classify(tile: RasterTile, model: TrainedModel) -> RasterTile:
    """Classify a tile with a trained model."""
    return RandomForestPixelClassifier(class_ids=model.class_ids).classify(tile, model)


def predict_samples(samples: TrainingSet, model: TrainedModel) -> np.ndarray:
    """Predicted labels of held-out samples."""
    features = samples.feature_matrix(model.feature_band_names)
    return RandomForestPixelClassifier(class_ids=model.class_ids).predict(model, features)
