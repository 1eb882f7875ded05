"""
Count table and gene annotation loading.

The count file has the gene identifier in the first column and one column
per sample.  Identifiers are always read as strings so that numeric-looking
IDs (Entrez IDs, zero-padded names) survive unchanged.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from .errors import CountMatrixError
from .model import CountMatrix

logger = logging.getLogger(__name__)

_TAB_SUFFIXES = {".tsv", ".tab", ".txt"}


def infer_separator(path: Union[str, Path]) -> str:
    """Tab for .tsv/.tab/.txt (optionally gzipped), comma otherwise."""
    suffixes = [s.lower() for s in Path(path).suffixes]
    if suffixes and suffixes[-1] == ".gz":
        suffixes = suffixes[:-1]
    if suffixes and suffixes[-1] in _TAB_SUFFIXES:
        return "\t"
    return ","


def read_keyed_table(path: Path, sep: Optional[str] = None) -> pd.DataFrame:
    """Read a table whose first column holds string identifiers, used as index."""
    sep = sep or infer_separator(path)
    header = pd.read_csv(path, sep=sep, nrows=0)
    if header.shape[1] < 2:
        raise CountMatrixError(
            f"{path} needs an identifier column and at least one data column",
            stage="load",
        )
    key = header.columns[0]
    frame = pd.read_csv(path, sep=sep, dtype={key: str})
    return frame.set_index(key)


def load_counts(path: Union[str, Path], sep: Optional[str] = None) -> CountMatrix:
    """
    Read a genes x samples raw count table.

    Args:
        path: CSV/TSV file; first column gene IDs, remaining columns samples
        sep: Field separator (inferred from the file suffix if None)

    Returns:
        Validated CountMatrix in file row order

    Raises:
        FileNotFoundError: path does not exist
        CountMatrixError: malformed table (see ``validate_counts``)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count table not found: {path}")

    logger.info("Loading counts from %s", path)
    frame = read_keyed_table(path, sep)
    frame.index.name = "gene_id"
    counts = CountMatrix(frame)
    logger.info("  -> %d genes x %d samples", *counts.shape)
    return counts


def load_annotations(path: Union[str, Path], sep: Optional[str] = None) -> pd.DataFrame:
    """
    Read a gene annotation table (gene ID + symbol, description, ...).

    Duplicate gene IDs keep their first occurrence.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Annotation table not found: {path}")

    frame = read_keyed_table(path, sep)
    frame.index = frame.index.map(str)
    frame.index.name = "gene_id"
    if not frame.index.is_unique:
        n_dup = int(frame.index.duplicated().sum())
        logger.warning("Annotation table: dropping %d duplicate gene IDs", n_dup)
        frame = frame[~frame.index.duplicated(keep="first")]
    return frame
