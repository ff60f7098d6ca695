"""Load and parse the criteria catalogue from YAML files."""

from pathlib import Path

import yaml

from a11yops.compliance_runner.models.catalogue import Catalogue

DEFAULT_CATALOGUE_PATH = Path(__file__).parent / "data" / "wcag_catalogue.yaml"


def load_catalogue(path: Path | None = None) -> Catalogue:
    """Load a criteria catalogue.

    Args:
        path: Path to a catalogue YAML file. The bundled WCAG catalogue is used
            when omitted.

    Returns:
        Parsed, immutable catalogue

    Raises:
        FileNotFoundError: If the catalogue file doesn't exist
        ValueError: If YAML is invalid or doesn't match schema

    """
    catalogue_file = path or DEFAULT_CATALOGUE_PATH

    if not catalogue_file.exists():
        raise FileNotFoundError(f"Catalogue file not found: {catalogue_file}")

    try:
        with catalogue_file.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {catalogue_file}: {e}") from e

    if data is None:
        raise ValueError(f"Empty catalogue file: {catalogue_file}")

    try:
        catalogue = Catalogue.model_validate(data)
    except Exception as e:
        raise ValueError(f"Invalid catalogue schema in {catalogue_file}: {e}") from e

    _check_references(catalogue, catalogue_file)
    return catalogue


def _check_references(catalogue: Catalogue, source: Path) -> None:
    """Reject rule mappings or procedures that name unknown criteria."""
    known = set(catalogue.criteria)
    for tool, profile in catalogue.tools.items():
        for rule_id, mapping in profile.rules.items():
            unknown = [c for c in mapping.criteria if c not in known]
            if unknown:
                raise ValueError(
                    f"Rule {tool}/{rule_id} in {source} maps to unknown "
                    f"criteria: {', '.join(unknown)}"
                )
    for criterion_id in catalogue.procedures:
        if criterion_id not in known:
            raise ValueError(
                f"Procedure for unknown criterion {criterion_id} in {source}"
            )
