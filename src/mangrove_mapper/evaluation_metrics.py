"""Accuracy assessment and area statistics."""

import numpy as np
from typing import Any, Dict, Optional, Sequence
from sklearn.metrics import confusion_matrix
import json
from pathlib import Path

from mangrove_mapper.cste import ClassInfo, ExportConfig
from mangrove_mapper.errors import ConfigurationError
from mangrove_mapper.logger import get_logger
from mangrove_mapper.raster_tile import RasterTile

log = get_logger("metrics")


class ConfusionMatrix:
    """
    Square integer matrix indexed by (true label, predicted label).

    Rows are reference classes, columns are predicted classes, both in `labels` order.
    """

    def __init__(self, matrix: np.ndarray, labels: Optional[Sequence[int]] = None):
        matrix = np.asarray(matrix, dtype=np.int64)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ConfigurationError(f"Confusion matrix must be square, got shape {matrix.shape}")
        if labels is None:
            labels = list(range(matrix.shape[0]))
        if len(labels) != matrix.shape[0]:
            raise ConfigurationError(f"{len(labels)} labels for a {matrix.shape[0]}x{matrix.shape[0]} matrix")
        self.matrix = matrix
        self.labels = [int(l) for l in labels]

    @property
    def total(self) -> int:
        return int(self.matrix.sum())

    def accuracy(self) -> float:
        """Overall accuracy: trace / sum (0.0 for an empty matrix)."""
        total = self.total
        if total == 0:
            return 0.0
        return int(np.trace(self.matrix)) / total

    def producers_accuracy(self) -> Dict[int, float]:
        """Per-class accuracy relative to reference labels (diagonal / row sums)."""
        rows = self.matrix.sum(axis=1)
        return {
            label: (int(self.matrix[i, i]) / int(rows[i]) if rows[i] else 0.0)
            for i, label in enumerate(self.labels)
        }

    def consumers_accuracy(self) -> Dict[int, float]:
        """Per-class reliability of predictions (diagonal / column sums)."""
        cols = self.matrix.sum(axis=0)
        return {
            label: (int(self.matrix[i, i]) / int(cols[i]) if cols[i] else 0.0)
            for i, label in enumerate(self.labels)
        }

    def kappa(self) -> float:
        """Cohen's kappa coefficient."""
        total = self.total
        if total == 0:
            return 0.0
        observed = self.accuracy()
        expected = float((self.matrix.sum(axis=0) * self.matrix.sum(axis=1)).sum()) / total ** 2
        if expected == 1.0:
            return 0.0
        return (observed - expected) / (1.0 - expected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'labels': self.labels,
            'matrix': self.matrix.tolist(),
            'accuracy': self.accuracy(),
            'kappa': self.kappa(),
            'producers_accuracy': {str(k): v for k, v in self.producers_accuracy().items()},
            'consumers_accuracy': {str(k): v for k, v in self.consumers_accuracy().items()},
        }

    def __repr__(self) -> str:
        return f"ConfusionMatrix(labels={self.labels}, matrix={self.matrix.tolist()})"


def error_matrix(
    true_labels: Sequence[int],
    predicted_labels: Sequence[int],
    labels: Optional[Sequence[int]] = None,
) -> ConfusionMatrix:
    """
    Compute the confusion matrix of held-out samples.

    Args:
        true_labels: Reference labels
        predicted_labels: Predicted labels
        labels: Class order (default: sorted union of both label sets)

    Returns:
        ConfusionMatrix
    """
    y_true = np.asarray(true_labels).ravel()
    y_pred = np.asarray(predicted_labels).ravel()
    if y_true.shape != y_pred.shape:
        raise ConfigurationError(
            f"{y_true.size} true labels but {y_pred.size} predicted labels"
        )

    if labels is None:
        labels = sorted(set(y_true.tolist()) | set(y_pred.tolist())) or list(ClassInfo.CLASS_NAMES)
    else:
        unknown = sorted((set(y_true.tolist()) | set(y_pred.tolist())) - set(labels))
        if unknown:
            raise ConfigurationError(f"Labels {unknown} are not in the class list {list(labels)}")

    if y_true.size == 0:
        return ConfusionMatrix(np.zeros((len(labels), len(labels)), dtype=np.int64), labels)

    cm = confusion_matrix(y_true, y_pred, labels=list(labels))
    return ConfusionMatrix(cm, labels)


def accuracy(matrix: ConfusionMatrix) -> float:
    return matrix.accuracy()


def area_estimate(
    tile: RasterTile,
    pixel_area_ha: Optional[float] = None,
    target_class: int = ClassInfo.MANGROVE,
    band: str = ExportConfig.OUTPUT_BAND,
) -> float:
    """
    Area in hectares of valid pixels of the target class.

    Args:
        tile: Classification tile (its mask marks retained pixels)
        pixel_area_ha: Area of one pixel (default: from the tile geotransform)
        target_class: Class to measure
        band: Classification band name

    Returns:
        count(valid & class == target) * pixel_area_ha
    """
    if pixel_area_ha is None:
        pixel_area_ha = tile.pixel_area_ha
    if pixel_area_ha <= 0:
        raise ConfigurationError(f"Pixel area must be positive, got {pixel_area_ha} ha")

    count = int((tile.mask & (tile.band(band) == target_class)).sum())
    area = count * pixel_area_ha
    log.info(f"Class {target_class}: {count} pixels x {pixel_area_ha:g} ha = {area:.2f} ha")
    return area


def save_evaluation_report(
    results: Dict[str, Any],
    save_dir: str,
    name: str
) -> Path:
    """
    Save evaluation report to JSON file.

    Args:
        results: Evaluation results dictionary
        save_dir: Directory to save report
        name: Report name prefix

    Returns:
        Path of the written report
    """
    save_path = Path(save_dir)
    save_path.mkdir(parents=True, exist_ok=True)

    report_path = save_path / f'{name}_evaluation.json'

    #! Convert numpy values to native types for JSON serialization
    serializable_results = {}
    for key, value in results.items():
        if isinstance(value, ConfusionMatrix):
            serializable_results[key] = value.to_dict()
        elif isinstance(value, np.ndarray):
            serializable_results[key] = value.tolist()
        elif isinstance(value, np.generic):
            serializable_results[key] = value.item()
        else:
            serializable_results[key] = value

    with open(report_path, 'w') as f:
        json.dump(serializable_results, f, indent=2)

    log.info(f"Saved evaluation report to {report_path}")
    return report_path


def print_evaluation_summary(matrix: ConfusionMatrix, area_ha: Optional[float] = None) -> None:
    """
    Log a formatted evaluation summary.

    Args:
        matrix: Validation confusion matrix
        area_ha: Mapped area of the target class
    """
    log.info("=" * 50)
    log.info("EVALUATION SUMMARY")
    log.info("=" * 50)

    log.info(f"Overall accuracy: {matrix.accuracy():.4f}")
    log.info(f"Kappa:            {matrix.kappa():.4f}")

    producers = matrix.producers_accuracy()
    consumers = matrix.consumers_accuracy()
    for label in matrix.labels:
        name = ClassInfo.CLASS_NAMES.get(label, str(label))
        log.info(f"  {name}: producer's {producers[label]:.4f}, consumer's {consumers[label]:.4f}")

    log.info(f"Confusion matrix (rows = reference):\n{matrix.matrix}")
    if area_ha is not None:
        log.info(f"Mapped area: {area_ha:.2f} ha")
    log.info("=" * 50)
