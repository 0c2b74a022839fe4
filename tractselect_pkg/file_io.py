# -*- coding: utf-8 -*-

"""
Tractogram file input/output for TractSelect.

Reading and writing is delegated to nibabel (TRK, TCK) and trx-python (TRX);
this module only adapts the loaded objects into a streamline collection plus
affine and header, and writes selections back out.
"""

# ============================================================================
# Imports
# ============================================================================

import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import nibabel as nib
import trx.trx_file_memmap as tbx
from nibabel.streamlines import ArraySequence

from .utils import MIN_STREAMLINE_POINTS

logger = logging.getLogger(__name__)

LOADABLE_EXTENSIONS: Tuple[str, ...] = (".trk", ".tck", ".trx")
SAVABLE_EXTENSIONS: Tuple[str, ...] = (".trk", ".tck")


@dataclass
class TractogramData:
    """Streamlines (RASmm) of a loaded tractogram with its affine and header."""

    streamlines: ArraySequence
    affine: np.ndarray
    header: Dict[str, Any] = field(default_factory=dict)
    path: Optional[str] = None

    def __len__(self) -> int:
        return len(self.streamlines)


# ============================================================================
# Helpers
# ============================================================================


def remove_short_streamlines(
    streamlines: Sequence[np.ndarray],
) -> Tuple[ArraySequence, np.ndarray]:
    """
    Drops streamlines with fewer than two points.

    Returns:
        Tuple (kept streamlines as ArraySequence, positions of dropped ones).
    """
    if not isinstance(streamlines, ArraySequence):
        streamlines = ArraySequence(streamlines)
    if len(streamlines) == 0:
        return streamlines, np.empty(0, dtype=np.int64)

    lengths = np.asarray(streamlines._lengths)
    dropped = np.flatnonzero(lengths < MIN_STREAMLINE_POINTS)
    if dropped.size == 0:
        return streamlines, dropped

    logger.warning(
        f"Dropping {dropped.size} streamlines with fewer than "
        f"{MIN_STREAMLINE_POINTS} points."
    )
    kept = np.flatnonzero(lengths >= MIN_STREAMLINE_POINTS)
    return streamlines[kept], dropped.astype(np.int64)


def _affine_or_identity(candidate: Any) -> np.ndarray:
    if isinstance(candidate, np.ndarray) and candidate.shape == (4, 4):
        return candidate.astype(np.float64)
    return np.identity(4)


# ============================================================================
# Loading
# ============================================================================


def _load_nibabel(path: str, ext: str) -> Tuple[ArraySequence, np.ndarray, Dict[str, Any]]:
    file_cls = nib.streamlines.TrkFile if ext == ".trk" else nib.streamlines.TckFile
    tract_file = file_cls.load(path, lazy_load=False)
    tractogram_obj = tract_file.tractogram
    header = tract_file.header.copy() if hasattr(tract_file, "header") else {}
    affine = _affine_or_identity(getattr(tractogram_obj, "affine_to_rasmm", None))
    # Loaded streamlines are already in RASmm; keep the voxel grid of the file
    voxel_to_rasmm = header.get(nib.streamlines.Field.VOXEL_TO_RASMM)
    if np.allclose(affine, np.identity(4)) and voxel_to_rasmm is not None:
        affine = _affine_or_identity(np.asarray(voxel_to_rasmm))
    return tractogram_obj.streamlines, affine, header


def _load_trx(path: str) -> Tuple[ArraySequence, np.ndarray, Dict[str, Any]]:
    trx_obj = tbx.load(path)
    header = dict(trx_obj.header)
    affine = _affine_or_identity(getattr(trx_obj, "affine_to_rasmm", None))
    if np.allclose(affine, np.identity(4)) and "VOXEL_TO_RASMM" in header:
        affine = _affine_or_identity(np.asarray(header["VOXEL_TO_RASMM"]))
    # Copy out of the memory map so the file can be closed
    streamlines = trx_obj.streamlines.copy()
    trx_obj.close()
    return streamlines, affine, header


def load_tractogram(path: str) -> TractogramData:
    """
    Loads a TRK, TCK or TRX tractogram.

    Streamlines with fewer than two points are dropped with a warning.

    Args:
        path: Path to the tractogram file.

    Returns:
        TractogramData with streamlines in RASmm.

    Raises:
        FileNotFoundError: If the path does not exist.
        ValueError: If the extension is not supported.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Tractogram file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    if ext not in LOADABLE_EXTENSIONS:
        raise ValueError(
            f"Unsupported file format: {ext} (expected one of {', '.join(LOADABLE_EXTENSIONS)})"
        )

    try:
        if ext == ".trx":
            streamlines, affine, header = _load_trx(path)
        else:
            streamlines, affine, header = _load_nibabel(path, ext)
    except Exception as e:
        logger.error(f"Error loading tractogram {path}: {e}", exc_info=True)
        raise

    streamlines, _ = remove_short_streamlines(streamlines)
    logger.info(f"Loaded {len(streamlines)} streamlines from {os.path.basename(path)}")
    return TractogramData(streamlines, affine, header, path)


# ============================================================================
# Saving
# ============================================================================


def _prepare_trk_header(
    base_header: Optional[Dict[str, Any]],
    nb_streamlines: int,
    reference_affine: Optional[np.ndarray] = None,
) -> Dict[str, Any]:
    """
    Builds a TRK header, keeping the spatial reference of the source file.

    Missing fields are derived from ``reference_affine`` where possible and
    otherwise defaulted (identity, 1 mm voxels, RAS).
    """
    base_header = base_header or {}
    Field = nib.streamlines.Field
    header: Dict[str, Any] = {}

    voxel_to_rasmm = base_header.get(Field.VOXEL_TO_RASMM)
    if not (isinstance(voxel_to_rasmm, np.ndarray) and voxel_to_rasmm.shape == (4, 4)):
        voxel_to_rasmm = _affine_or_identity(reference_affine)
    header[Field.VOXEL_TO_RASMM] = voxel_to_rasmm.astype(np.float32)

    voxel_sizes = base_header.get(Field.VOXEL_SIZES)
    if voxel_sizes is None or len(voxel_sizes) != 3:
        voxel_sizes = nib.affines.voxel_sizes(voxel_to_rasmm)
    header[Field.VOXEL_SIZES] = tuple(float(v) for v in voxel_sizes)

    dimensions = base_header.get(Field.DIMENSIONS)
    if dimensions is None or len(dimensions) != 3:
        dimensions = (1, 1, 1)
    header[Field.DIMENSIONS] = tuple(int(d) for d in dimensions)

    voxel_order = base_header.get(Field.VOXEL_ORDER)
    if isinstance(voxel_order, bytes):
        voxel_order = voxel_order.decode("utf-8", errors="replace")
    if not (isinstance(voxel_order, str) and len(voxel_order) == 3):
        voxel_order = "".join(nib.aff2axcodes(voxel_to_rasmm))
        logger.info(f"Derived 'voxel_order' from affine: {voxel_order}")
    header[Field.VOXEL_ORDER] = voxel_order.upper()

    header[Field.NB_STREAMLINES] = nb_streamlines
    return header


def _prepare_tck_header(
    base_header: Optional[Dict[str, Any]], nb_streamlines: int
) -> Dict[str, Any]:
    """Prepares the header dictionary for TCK saving."""
    # Start clean so TRK-specific fields (like 'magic') do not leak into TCK
    header = {"count": str(nb_streamlines)}

    if base_header:
        for key in ("voxel_order", "dimensions", "voxel_sizes"):
            if key in base_header:
                val = base_header[key]
                if isinstance(val, (tuple, list, np.ndarray)):
                    header[key] = " ".join(map(str, np.array(val).flatten()))
                elif isinstance(val, bytes):
                    header[key] = val.decode("utf-8", errors="replace")
                else:
                    header[key] = str(val)

    return header


def save_streamlines(
    streamlines: Sequence[np.ndarray],
    output_path: str,
    header: Optional[Dict[str, Any]] = None,
    reference_affine: Optional[np.ndarray] = None,
) -> str:
    """
    Writes RASmm streamlines to a TRK or TCK file with nibabel.

    Args:
        streamlines: Streamlines to save (e.g. a SelectionResult).
        output_path: Destination path; the extension selects the format.
        header: Header of the source tractogram, reused where compatible.
        reference_affine: Voxel-to-RASmm affine used when the header has none.

    Returns:
        The path written.

    Raises:
        ValueError: If the extension is not supported.
    """
    ext = os.path.splitext(output_path)[1].lower()
    if ext not in SAVABLE_EXTENSIONS:
        raise ValueError(f"Unsupported save extension: {ext}")

    tractogram = nib.streamlines.Tractogram(
        [np.asarray(sl, dtype=np.float32) for sl in streamlines],
        affine_to_rasmm=np.identity(4),
    )
    nb_streamlines = len(tractogram)

    try:
        if ext == ".trk":
            trk_header = _prepare_trk_header(header, nb_streamlines, reference_affine)
            nib.streamlines.save(nib.streamlines.TrkFile(tractogram, header=trk_header), output_path)
        else:
            tck_header = _prepare_tck_header(header, nb_streamlines)
            nib.streamlines.save(nib.streamlines.TckFile(tractogram, header=tck_header), output_path)
    except Exception as e:
        logger.error(f"Error saving streamlines to {output_path}: {e}", exc_info=True)
        raise

    logger.info(f"File saved successfully ({ext.upper()[1:]}): {os.path.basename(output_path)}")
    return output_path
