"""Command line interface: ``jax-nlcg``."""

from __future__ import annotations

import importlib
import sys
from pathlib import Path

import click
import yaml
from loguru import logger
from pydantic import ValidationError

from .config import NLCGConfig
from .diagnostics import check_gradient
from .gradient import StandardGradient, UltrasoftGradient
from .main import run
from .operators import Identity
from .smearing import SmearingType

_LEVELS = {0: "WARNING", 1: "INFO", 2: "DEBUG"}


def load_factory(spec: str):
    """Resolve ``module:callable``."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise click.BadParameter(f"expected 'module:factory', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as err:
        raise click.BadParameter(f"cannot import {module_name!r}: {err}") from err
    try:
        return getattr(module, attr)
    except AttributeError as err:
        raise click.BadParameter(f"{module_name!r} has no attribute {attr!r}") from err


def build_model(spec: str):
    """Call the factory; returns ``(energy, overlap, preconditioner)``."""
    made = load_factory(spec)()
    if isinstance(made, tuple):
        if len(made) != 3:
            raise click.BadParameter("a model factory must return a model or (model, overlap, preconditioner)")
        return made
    return made, None, None


@click.group()
@click.version_option(package_name="jax-nlcg", prog_name="jax-nlcg")
@click.option("--verbose", "-v", count=True, help="increase log verbosity (-v, -vv)")
@click.pass_context
def cli(ctx, verbose):
    """Geodesic NLCG minimization of the Mermin free energy.

    \b
    Examples:
        jax-nlcg validate run.yaml
        jax-nlcg -v run --config run.yaml --model jax_nlcg.models:random_model
        jax-nlcg check-gradient --model jax_nlcg.models:random_model
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    logger.remove()
    logger.add(
        lambda msg: click.echo(msg, err=True, nl=False),
        format="{message}",
        level=_LEVELS.get(verbose, "DEBUG"),
    )


@cli.command()
@click.argument("config_file", type=click.Path(exists=True, path_type=Path))
def validate(config_file):
    """Validate a YAML run configuration."""
    try:
        config = NLCGConfig.from_yaml(config_file)
    except (yaml.YAMLError, ValidationError) as err:
        click.secho(f"invalid configuration: {err}", fg="red", err=True)
        sys.exit(1)
    click.secho(f"{config_file}: ok", fg="green")
    for key, value in config.to_dict().items():
        click.echo(f"  {key}: {value}")


@cli.command("run")
@click.option("--config", "config_file", required=True, type=click.Path(exists=True, path_type=Path))
@click.option("--model", "model_spec", required=True, help="model factory as module:callable")
def run_cmd(config_file, model_spec):
    """Minimize the free energy of a model built by a factory."""
    config = NLCGConfig.from_yaml(config_file)
    energy, overlap, preconditioner = build_model(model_spec)
    info = run(energy, config, overlap=overlap, preconditioner=preconditioner)
    click.echo(f"status      : {info.status.value}")
    click.echo(f"iterations  : {info.iterations}")
    click.echo(f"free energy : {info.free_energy:.13f}")
    click.echo(f"KS energy   : {info.ks_energy:.13f}")
    click.echo(f"-T S        : {info.entropy:.13f}")
    click.echo(f"slope       : {info.tolerance:.6e}")


@cli.command("check-gradient")
@click.option("--model", "model_spec", required=True, help="model factory as module:callable")
@click.option("--temperature", "-T", type=float, default=3000.0, show_default=True, help="[K]")
@click.option(
    "--smearing",
    type=click.Choice([s.value for s in SmearingType]),
    default=SmearingType.FERMI_DIRAC.value,
    show_default=True,
)
@click.option("--kappa", type=float, default=0.3, show_default=True)
def check_gradient_cmd(model_spec, temperature, smearing, kappa):
    """Compare the analytic slope with finite differences."""
    energy, overlap, preconditioner = build_model(model_spec)
    strategy = None
    if overlap is not None:
        strategy = UltrasoftGradient(overlap, preconditioner or Identity())
    elif preconditioner is not None:
        strategy = StandardGradient(preconditioner)
    result = check_gradient(energy, temperature, smearing, kappa=kappa, strategy=strategy)
    click.echo(f"slope: {result.slope:.10e}")
    for dt, fd in zip(result.dts, result.fd_slopes):
        click.echo(f"  dt = {dt:.1e}  fd = {fd:.10e}  rel. error = {abs(fd - result.slope) / abs(result.slope):.2e}")


def main():
    cli()


if __name__ == "__main__":
    main()
