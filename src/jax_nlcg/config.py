"""Run configuration, loadable from YAML."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .smearing import SmearingType
from .utils import Space


class Variant(str, Enum):
    STANDARD = "standard"
    ULTRASOFT = "ultrasoft"


class BaseConfig(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        use_enum_values=True,
    )

    @classmethod
    def from_yaml(cls, yaml_file: str | Path):
        """Load and validate a configuration file.

        Raises:
            FileNotFoundError: the file does not exist
            yaml.YAMLError: malformed YAML
            pydantic.ValidationError: invalid or unknown fields
        """
        yaml_path = Path(yaml_file)
        if not yaml_path.exists():
            raise FileNotFoundError(f"configuration file not found: {yaml_file}")

        with open(yaml_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        return cls.model_validate(data or {})

    def to_yaml(self, yaml_file: str | Path) -> None:
        yaml_path = Path(yaml_file)
        yaml_path.parent.mkdir(parents=True, exist_ok=True)

        with open(yaml_path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(mode="json"),
                f,
                default_flow_style=False,
                sort_keys=False,
            )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class LineSearchConfig(BaseConfig):
    t_trial: float = Field(default=0.2, gt=0, description="first trial step along the geodesic")
    max_trials: int = Field(default=10, ge=1, description="maximal number of backtracking trials")
    c1: float = Field(default=1e-4, ge=0, lt=1, description="Armijo sufficient-decrease constant")


class NLCGConfig(BaseConfig):
    """Parameters of a geodesic NLCG run."""

    temperature: float = Field(gt=0, description="electronic temperature [K]")
    smearing: SmearingType = SmearingType.FERMI_DIRAC
    maxiter: int = Field(default=300, gt=0)
    tol: float = Field(default=1e-9, gt=0, description="convergence threshold on |slope|")
    kappa: float = Field(default=0.3, ge=0, description="step scaling of the eta direction")
    tau: float = Field(default=0.1, gt=0, lt=1, description="backtracking shrink factor")
    restart: int = Field(default=10, gt=0, description="CG restart period")
    line_search: LineSearchConfig = Field(default_factory=LineSearchConfig)

    variant: Variant = Variant.STANDARD
    fetch: Space = Space.HOST
    compute: Space = Space.HOST

    trap_fpe: bool = Field(default=True, description="raise on invalid / overflowing arithmetic")
    log_file: Optional[str] = None
    failure_scan: int = Field(
        default=0, ge=0, description="free-energy samples along Z_x logged after a descent failure"
    )
