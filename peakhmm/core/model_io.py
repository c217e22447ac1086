"""
PeakHMM model I/O module

Fitted models are stored as JSON: human-readable and fully portable.
The file holds the PeakHMM dictionary (see PeakHMM.to_dict) plus an
optional free-form metadata block (fit summary, command line options).
"""

import json
import os
import warnings
from typing import Any, Dict, Optional, Tuple

from peakhmm.core.hmm import PeakHMM

FORMAT_VERSION = '1.0'


# =============================================================================
# Loading
# =============================================================================

def load_model(filepath: str, normalize: bool = True) -> PeakHMM:
    """
    Load a model from a JSON file.

    Args:
        filepath: Path to model file
        normalize: If True, make sure the background role has the lower mean

    Returns:
        PeakHMM model instance
    """
    model, _ = load_model_with_metadata(filepath, normalize=normalize)
    return model


def load_model_with_metadata(filepath: str, normalize: bool = True) -> Tuple[PeakHMM, Dict[str, Any]]:
    """
    Load model and the metadata saved next to it.

    Returns:
        (model, metadata)
    """
    with open(filepath, 'r') as f:
        data = json.load(f)

    if data.get('model_type') != 'PeakHMM':
        raise ValueError(
            f"{filepath} does not contain a PeakHMM model "
            f"(model_type={data.get('model_type')!r})"
        )

    model = PeakHMM.from_dict(data)
    if normalize:
        model.normalize_states()

    return model, data.get('metadata', {})


# =============================================================================
# Saving (JSON only)
# =============================================================================

def save_model(model: PeakHMM, filepath: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    """
    Save model to file in JSON format.

    If the filepath does not end in .json, the extension is replaced with .json
    and a warning is issued.

    Args:
        model: PeakHMM model
        filepath: Output path (.json)
        metadata: Optional JSON-serializable dictionary stored with the model

    Returns:
        The path actually written
    """
    if not filepath.endswith('.json'):
        old_path = filepath
        base, _ = os.path.splitext(filepath)
        filepath = base + '.json'
        warnings.warn(
            f"Only JSON format is supported for saving. "
            f"Saving to '{filepath}' instead of '{old_path}'."
        )

    data = model.to_dict()
    data['version'] = FORMAT_VERSION
    if metadata:
        data['metadata'] = metadata

    with open(filepath, 'w') as f:
        json.dump(data, f, indent=2)
    return filepath
