"""Resolve BAM files and filters from a BAM path or a PacBio dataset XML."""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path

import pysam

from zmw_align.filters import DatasetFilter, FilterProperty
from zmw_align.models import InputShapeError, ReadIOError

log = logging.getLogger(__name__)


@dataclass
class DataSet:
    """BAM files and dataset filters behind one input path."""

    path: Path
    bam_files: list[Path] = field(default_factory=list)
    filters: list[DatasetFilter] = field(default_factory=list)

    @property
    def has_filters(self) -> bool:
        return any(f.properties for f in self.filters)

    def single_bam(self) -> Path:
        """The only BAM file of the dataset; raises if there is not exactly one."""
        if len(self.bam_files) != 1:
            raise InputShapeError(
                f"Input must have exactly one BAM file, found {len(self.bam_files)} in {self.path}"
            )
        return self.bam_files[0]


def _local(tag: str) -> str:
    """Strip an XML namespace: ``{ns}Filter`` -> ``Filter``."""
    return tag.rsplit("}", 1)[-1]


def _children(elem: ET.Element, name: str) -> list[ET.Element]:
    return [c for c in elem if _local(c.tag) == name]


def parse_dataset_xml(path: Path) -> DataSet:
    """Parse the top-level external BAM resources and filters of a dataset XML."""
    try:
        root = ET.parse(path).getroot()
    except (OSError, ET.ParseError) as exc:
        raise ReadIOError(f"Cannot parse dataset XML {path}: {exc}") from exc

    ds = DataSet(path=path)
    for resources in _children(root, "ExternalResources"):
        for res in _children(resources, "ExternalResource"):
            rid = res.get("ResourceId", "")
            if not rid.endswith(".bam"):
                continue
            bam = Path(rid.removeprefix("file://"))
            if not bam.is_absolute():
                bam = path.parent / bam
            ds.bam_files.append(bam)

    for filters in _children(root, "Filters"):
        for flt in _children(filters, "Filter"):
            props = []
            for props_elem in _children(flt, "Properties"):
                for p in _children(props_elem, "Property"):
                    attrs = {k: v for k, v in p.attrib.items() if k not in ("Name", "Operator", "Value")}
                    props.append(FilterProperty(
                        name=p.get("Name", ""),
                        operator=p.get("Operator", ""),
                        value=p.get("Value", ""),
                        attributes=attrs,
                    ))
            ds.filters.append(DatasetFilter(props))

    log.debug("Dataset %s: %d BAM file(s), %d filter(s)", path, len(ds.bam_files), len(ds.filters))
    return ds


def open_dataset(path: Path | str) -> DataSet:
    """Open a ``.bam`` directly or a dataset ``.xml`` (SubreadSet, ConsensusReadSet, ...)."""
    path = Path(path)
    if not path.exists():
        raise ReadIOError(f"Input file not found: {path}")
    if path.suffix.lower() == ".xml":
        return parse_dataset_xml(path)
    if path.suffix.lower() == ".bam":
        return DataSet(path=path, bam_files=[path])
    raise InputShapeError(f"Unsupported input type (expected .bam or dataset .xml): {path}")


def read_group_types(bam_path: Path) -> set[str]:
    """READTYPE values declared in the ``@RG DS`` fields of a BAM header."""
    try:
        with pysam.AlignmentFile(str(bam_path), "rb", check_sq=False) as af:
            header = af.header.to_dict()
    except (OSError, ValueError) as exc:
        raise ReadIOError(f"Cannot open BAM file {bam_path}: {exc}") from exc

    types = set()
    for rg in header.get("RG", []):
        for item in rg.get("DS", "").split(";"):
            key, _, value = item.partition("=")
            if key == "READTYPE" and value:
                types.add(value)
    return types


def read_type(ds: DataSet) -> str:
    """The single read type (``SUBREAD``, ``CCS``, ...) shared by all BAMs of a dataset."""
    if not ds.bam_files:
        raise InputShapeError(f"No BAM files available for: {ds.path}")
    types: set[str] = set()
    for bam in ds.bam_files:
        types |= read_group_types(bam)
    if len(types) > 1:
        raise InputShapeError(f"Do not mix and match different read types for input file : {ds.path}")
    if not types:
        raise InputShapeError(f"Could not determine read type, read groups are missing : {ds.path}")
    return types.pop()
