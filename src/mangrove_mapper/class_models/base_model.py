"""Abstract base class for all pixel classifiers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Sequence, Tuple
import numpy as np
import json
from pathlib import Path

from mangrove_mapper.cste import ClassInfo, ClassifierConfig, ExportConfig
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import RasterTile
from mangrove_mapper.training_samples import TrainingSet

log = get_logger("model_base")


@dataclass(frozen=True)
class TrainedModel:
    """
    Fitted classifier state. Never mutated after training.

    Attributes:
        estimator: Fitted estimator exposing .predict(X)
        feature_band_names: Band order expected by the estimator
        class_ids: Classes seen during training
        config: Hyperparameters used for training
        metrics: Training metrics (accuracy, importances...)
    """
    estimator: Any
    feature_band_names: Tuple[str, ...]
    class_ids: Tuple[int, ...]
    config: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)


class BaseClassifier(ABC):
    """Abstract base class for pixel classifiers."""

    def __init__(self, model_name: str, class_ids: Sequence[int] = tuple(ClassInfo.CLASS_NAMES)):
        """
        Initialize base model.

        Args:
            model_name: Name identifier for the model
            class_ids: Classes that must all be present in the training set
        """
        self.model_name = model_name
        self.class_ids = tuple(int(c) for c in class_ids)
        self.config: Dict[str, Any] = {}

    @abstractmethod
    def train(self, training_set: TrainingSet, feature_band_names: Sequence[str]) -> TrainedModel:
        """
        Fit the classifier.

        Args:
            training_set: Labelled samples
            feature_band_names: Bands used as features, in order

        Returns:
            Immutable trained model
        """

    def predict(self, model: TrainedModel, features: np.ndarray) -> np.ndarray:
        """
        Predict class ids for a (N, C) feature matrix.

        Args:
            model: Trained model
            features: Feature matrix in model.feature_band_names order

        Returns:
            Integer labels, shape (N,)
        """
        if features.shape[0] == 0:
            return np.empty(0, dtype=np.int64)
        return np.asarray(model.estimator.predict(features)).astype(np.int64)

    def classify(
        self,
        tile: RasterTile,
        model: TrainedModel,
        batch_size: int = ClassifierConfig.PREDICT_BATCH_SIZE,
        output_band: str = ExportConfig.OUTPUT_BAND,
    ) -> RasterTile:
        """
        Classify every valid pixel of a tile.

        Invalid input pixels stay invalid (their class value is 0).

        Args:
            tile: Tile containing every feature band
            model: Trained model
            batch_size: Pixels per prediction batch (bounds memory)
            output_band: Name of the classification band

        Returns:
            Tile with a single integer-valued classification band
        """
        missing = [b for b in model.feature_band_names if not tile.has_band(b)]
        if missing:
            raise ConfigurationError(f"Tile is missing feature bands {missing} required by the model")

        mask = tile.mask
        rows, cols = np.nonzero(mask)
        stack = tile.stack(model.feature_band_names)
        classification = np.zeros(tile.shape, dtype=np.int64)

        step = max(int(batch_size), 1)
        for start in range(0, rows.size, step):
            r = rows[start:start + step]
            c = cols[start:start + step]
            classification[r, c] = self.predict(model, stack[r, c])

        log.info(f"Classified {rows.size} valid pixels with {self.model_name}")
        return RasterTile({output_band: classification}, mask, tile.transform, tile.acquired, tile.crs)

    def check_training_set(self, training_set: TrainingSet) -> None:
        """
        Raise if the training set lacks samples for any configured class.

        Raises:
            ConfigurationError: Empty training set or empty class
        """
        if len(training_set) == 0:
            raise ConfigurationError("Training set is empty")
        counts = training_set.class_counts()
        for class_id in self.class_ids:
            if counts.get(class_id, 0) == 0:
                name = ClassInfo.CLASS_NAMES.get(class_id, str(class_id))
                raise ConfigurationError(
                    f"No training sample for class {class_id} ({name}); class counts: {counts}"
                )

    @abstractmethod
    def save(self, model: TrainedModel, save_dir: str) -> None:
        """
        Save model and configuration.

        Args:
            model: Trained model
            save_dir: Directory to save model artifacts
        """

    @abstractmethod
    def load(self, save_dir: str) -> TrainedModel:
        """
        Load model and configuration.

        Args:
            save_dir: Directory containing model artifacts
        """

    def _save_config(self, config: Dict[str, Any], save_dir: str) -> None:
        """
        Save model configuration to JSON.

        Args:
            config: Configuration dictionary
            save_dir: Directory to save configuration
        """
        save_path = Path(save_dir)
        save_path.mkdir(parents=True, exist_ok=True)

        config_path = save_path / 'config.json'
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=2)

        log.info(f"Saved config to {config_path}")

    def _load_config(self, save_dir: str) -> Dict[str, Any]:
        """
        Load model configuration from JSON.

        Args:
            save_dir: Directory containing configuration

        Returns:
            Configuration dictionary
        """
        config_path = Path(save_dir) / 'config.json'
        with open(config_path, 'r') as f:
            config = json.load(f)

        log.info(f"Loaded config from {config_path}")
        return config
