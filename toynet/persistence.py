"""
Persistence helpers: XML elements, CSV tables and run directories.

Readers raise ModelFormatError for missing or malformed fields. ``write_xml``
returns None instead of raising when the file cannot be written; CSV writers
raise OSError naming the path.
"""

import csv
import logging
import os
import xml.etree.ElementTree as ET
from datetime import datetime

from .exceptions import MatrixParseError, ModelFormatError
from .matrix import Matrix

logger = logging.getLogger(__name__)

#: Run directory names, e.g. 2024.05.17__13-02-45
TIMESTAMP_FORMAT = '%Y.%m.%d__%H-%M-%S'

CSV_SEPARATOR = ';'


# ============================================================================
# XML
# ============================================================================

def add_text_element(parent, tag, value):
    """Append <tag>value</tag> to ``parent`` and return the new element."""
    element = ET.SubElement(parent, tag)
    element.text = str(value)
    return element


def required_text(element, tag):
    child = element.find(tag)
    if child is None or child.text is None:
        raise ModelFormatError(f"Missing required element <{tag}> in <{element.tag}>")
    return child.text


def required_int(element, tag):
    text = required_text(element, tag)
    try:
        return int(text.strip())
    except ValueError as exc:
        raise ModelFormatError(f"<{tag}> must be an integer, got {text!r}") from exc


def required_float(element, tag):
    text = required_text(element, tag)
    try:
        return float(text.strip())
    except ValueError as exc:
        raise ModelFormatError(f"<{tag}> must be a number, got {text!r}") from exc


def optional_float(element, tag):
    if element.find(tag) is None:
        return None
    return required_float(element, tag)


def parse_matrix(text, what):
    try:
        return Matrix.parse(text or '')
    except MatrixParseError as exc:
        raise ModelFormatError(f"Invalid {what} matrix: {exc}") from exc


def write_xml(root, path):
    """
    Write ``root`` as an indented UTF-8 XML document.

    Returns:
        The path written, or None when the file could not be created.
    """
    tree = ET.ElementTree(root)
    ET.indent(tree, space='  ')
    try:
        tree.write(path, encoding='utf-8', xml_declaration=True)
    except OSError as exc:
        logger.error("Could not write %s: %s", path, exc)
        return None
    return path


def read_xml(path):
    """
    Parse an XML file and return its root element.

    Raises:
        FileNotFoundError: ``path`` does not exist
        ModelFormatError: the file is not well-formed XML
    """
    try:
        return ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise ModelFormatError(f"{path} is not valid XML: {exc}") from exc


# ============================================================================
# CSV
# ============================================================================

def write_csv(path, header, rows, separator=CSV_SEPARATOR):
    """
    Write a header line plus ``rows`` to ``path``.

    Raises:
        OSError: the file could not be written
    """
    try:
        with open(path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f, delimiter=separator)
            writer.writerow(header)
            writer.writerows(rows)
    except OSError as exc:
        raise OSError(f"Could not write {path}: {exc}") from exc
    logger.debug("Wrote %s", path)
    return path


def read_csv(path, separator=CSV_SEPARATOR):
    """Read a table written by ``write_csv``; returns (header, rows)."""
    with open(path, newline='', encoding='utf-8') as f:
        rows = list(csv.reader(f, delimiter=separator))
    if not rows:
        return [], []
    return rows[0], rows[1:]


# ============================================================================
# Directories
# ============================================================================

def create_run_directory(output_dir, now=None):
    """Create and return ``output_dir/<timestamp>`` for one training run."""
    now = now if now is not None else datetime.now()
    path = os.path.join(output_dir, now.strftime(TIMESTAMP_FORMAT))
    os.makedirs(path, exist_ok=True)
    logger.info("Saving training logs to %s", path)
    return path


def file_exists(path):
    return os.path.isfile(path)
