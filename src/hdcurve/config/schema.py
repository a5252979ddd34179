"""Config schema definitions."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from hdcurve.errors import ModelSpecError
from hdcurve.models.bayes.fit import MCMCConfig
from hdcurve.models.bayes.priors import Prior, get_default_priors
from hdcurve.models.bayes.spec import ModelSpec, ParameterStructure


class DatasetConfig(BaseModel):
    source: str
    encoding: str = "utf-8-sig"
    group_col: str = "common"
    predictor_col: str = "diameter"
    response_col: str = "height"
    min_distinct: Optional[int] = 25
    dropna: bool = True


class ParameterConfig(BaseModel):
    population_intercept: bool = True
    group_effect: bool = True


def _default_parameters() -> dict[str, ParameterConfig]:
    return {"a": ParameterConfig(), "b": ParameterConfig()}


def _default_prior_strings() -> dict[str, str]:
    return {name: prior.to_string() for name, prior in get_default_priors().items()}


class ModelConfig(BaseModel):
    mean_function: str = "exp(a + b / x)"
    predictor: str = "x"
    parameters: dict[str, ParameterConfig] = Field(default_factory=_default_parameters)
    priors: dict[str, str] = Field(default_factory=_default_prior_strings)
    min_group_observations: int = Field(default=3, ge=1)

    @field_validator("priors")
    @classmethod
    def validate_prior_strings(cls, value: dict[str, str]) -> dict[str, str]:
        """Reject prior strings that do not parse."""
        for site, text in value.items():
            try:
                Prior.parse(text).check(site)
            except ModelSpecError as e:
                raise ValueError(e.message) from e
        return value


class MCMCSettings(BaseModel):
    num_warmup: int = Field(default=1000, ge=0)
    num_samples: int = Field(default=1000, ge=1)
    num_chains: int = Field(default=4, ge=1)
    chain_method: Literal["sequential", "parallel"] = "sequential"
    seed: int = Field(default=0, ge=0)
    max_tree_depth: int = Field(default=10, ge=1)
    target_accept_prob: float = Field(default=0.8, gt=0.0, lt=1.0)
    max_step_retries: int = Field(default=5, ge=0)
    rhat_threshold: float = 1.01
    ess_threshold: float = 400


class SummaryConfig(BaseModel):
    interval: float = Field(default=0.95, gt=0.0, lt=1.0)
    mode: Literal["fitted", "predicted"] = "predicted"
    by: str = ".row"
    max_draws: Optional[int] = Field(default=None, ge=1)
    seed: int = Field(default=0, ge=0)
    unseen_group: Literal["population", "error"] = "population"
    min_draws: int = Field(default=2, ge=1)


class OutputsConfig(BaseModel):
    output_dir: str = "outputs"
    draws_csv: str = "draws.csv"
    diagnostics_json: str = "diagnostics.json"
    bands_csv: str = "bands.csv"
    save_netcdf: bool = True
    log_file: Optional[str] = None


class AppConfig(BaseModel):
    dataset: DatasetConfig
    model: ModelConfig = ModelConfig()
    mcmc: MCMCSettings = MCMCSettings()
    summary: SummaryConfig = SummaryConfig()
    outputs: OutputsConfig = OutputsConfig()

    @model_validator(mode="after")
    def validate_model_structure(self) -> "AppConfig":
        """Run full model spec validation at load time."""
        try:
            self.to_model_spec()
        except ModelSpecError as e:
            raise ValueError(e.message) from e
        return self

    def to_model_spec(self) -> ModelSpec:
        """Build and validate the ModelSpec described by the model section."""
        spec = ModelSpec(
            mean_function=self.model.mean_function,
            parameters={
                name: ParameterStructure(
                    population_intercept=p.population_intercept,
                    group_effect=p.group_effect,
                )
                for name, p in self.model.parameters.items()
            },
            priors={name: Prior.parse(text) for name, text in self.model.priors.items()},
            predictor=self.model.predictor,
            min_group_observations=self.model.min_group_observations,
        )
        return spec.validate()

    def to_mcmc_config(self) -> MCMCConfig:
        return MCMCConfig(**self.mcmc.model_dump())
