"""Command-line interface for CellType-Reference.

Provides CLI commands for training a reference, classifying test data,
one-shot annotation, and pruning existing score tables.
"""

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Optional

import click


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("celltype_reference")


def _load_config(config: Optional[str]):
    from celltype_reference.core.classification import ReferenceConfig

    if config:
        return ReferenceConfig.from_yaml(Path(config))
    return ReferenceConfig.default()


def _replace(section: Any, **overrides: Any) -> Any:
    """Copy a config section with the CLI options that were given."""
    changes = {key: value for key, value in overrides.items() if value is not None}
    return dataclasses.replace(section, **changes) if changes else section


def _read_reference_labels(ref: Any, labels: Optional[str], label_key: Optional[str]) -> Any:
    """Labels from an AnnData obs column or a CSV keyed by sample id."""
    from celltype_reference.io import load_labels

    if label_key is not None:
        if not hasattr(ref, "obs") or label_key not in ref.obs.columns:
            raise click.UsageError(f"--label-key '{label_key}' not found in reference obs")
        return ref.obs[label_key].astype(str).to_numpy()
    if labels is None:
        raise click.UsageError("Provide --labels (CSV) or --label-key (h5ad obs column)")
    sample_ids = list(ref.obs_names) if hasattr(ref, "obs_names") else list(ref.columns)
    return load_labels(labels, sample_ids=[str(s) for s in sample_ids])


def _read_markers(markers: Optional[str]) -> Optional[dict]:
    if markers is None:
        return None
    with open(markers, "r") as f:
        return json.load(f)


@click.group()
@click.version_option(version="0.1.0", prog_name="celltype-reference")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.option("--log-file", type=click.Path(), help="Also write a timestamped log file")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool, log_file: Optional[str]) -> None:
    """CellType-Reference: reference-based cell-type classification.

    Labels test expression profiles by rank correlation against a labelled
    reference, with iterative fine-tuning and pruning of weak calls.

    Examples:

        # Train once, classify many times
        celltype-reference train --ref ref.csv --labels labels.csv --out ref/

        celltype-reference classify --test test.h5ad --reference ref/reference.joblib --out pred/

        # Train and classify in one step
        celltype-reference annotate --test test.csv --ref ref.csv --labels labels.csv --out pred/

        # Re-prune an existing score table
        celltype-reference prune --scores pred/scores.csv --out pruned/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    if log_file:
        from celltype_reference.io import get_logger

        level = logging.DEBUG if debug else logging.INFO
        logger, actual_path = get_logger("celltype_reference", log_file, level=level)
        ctx.obj["log_path"] = actual_path
    else:
        logger = setup_logging(verbose, debug)
    ctx.obj["logger"] = logger


@cli.command()
@click.option("--ref", "-r", "ref_path", required=True, type=click.Path(exists=True),
              help="Reference expression matrix (CSV genes x samples, or .h5ad)")
@click.option("--labels", "-l", "labels_path", type=click.Path(exists=True),
              help="Reference labels CSV (sample id, label)")
@click.option("--label-key", help="Label column in reference obs (.h5ad input)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--genes", type=click.Choice(["de", "sd", "all"]), default=None,
              help="Feature selection mode")
@click.option("--markers", type=click.Path(exists=True),
              help="Marker genes JSON (per label, or per label pair)")
@click.option("--sd-thresh", type=float, default=None, help="SD threshold for genes=sd/all")
@click.option("--de-n", type=int, default=None, help="Markers per label pair for genes=de")
@click.option("--layer", default=None, help="AnnData layer with log-expression values")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML)")
@click.pass_context
def train(
    ctx: click.Context,
    ref_path: str,
    labels_path: Optional[str],
    label_key: Optional[str],
    output_path: str,
    genes: Optional[str],
    markers: Optional[str],
    sd_thresh: Optional[float],
    de_n: Optional[int],
    layer: Optional[str],
    config: Optional[str],
) -> None:
    """Train a reference and save it as reference.joblib."""
    logger = ctx.obj["logger"]
    logger.info("Training reference from: %s", ref_path)

    # Import here to avoid slow startup
    from celltype_reference.core.classification import train_reference
    from celltype_reference.io import (
        ensure_output_dir,
        load_expression_matrix,
        log_yaml,
        save_reference,
    )

    cfg = _load_config(config)
    training = _replace(cfg.training, genes=genes, sd_thresh=sd_thresh, de_n=de_n, layer=layer)
    out_dir = ensure_output_dir(output_path)

    ref = load_expression_matrix(ref_path, layer=training.layer)
    labels = _read_reference_labels(ref, labels_path, label_key)
    gene_spec = _read_markers(markers) or training.genes

    trained = train_reference(
        ref,
        labels,
        genes=gene_spec,
        config=training,
        neighbor_config=cfg.neighbors,
        logger=logger,
    )
    output_file = save_reference(trained, out_dir / "reference.joblib")
    log_yaml(out_dir / "training_summary.yaml", trained.summary())

    click.echo(
        f"Training complete: {len(trained.labels)} labels, "
        f"{len(trained.common_genes)} common genes"
    )
    click.echo(f"Output saved to: {output_file}")


@cli.command()
@click.option("--test", "-t", "test_path", required=True, type=click.Path(exists=True),
              help="Test expression matrix (CSV genes x samples, or .h5ad)")
@click.option("--reference", "-R", "reference_path", required=True, type=click.Path(exists=True),
              help="Trained reference (reference.joblib)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--quantile", type=float, default=None, help="Score quantile")
@click.option("--tune-thresh", type=float, default=None, help="Fine-tuning score window")
@click.option("--no-fine-tune", is_flag=True, help="Skip fine-tuning")
@click.option("--n-workers", type=int, default=None, help="Parallel workers")
@click.option("--layer", default=None, help="AnnData layer with log-expression values")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML)")
@click.pass_context
def classify(
    ctx: click.Context,
    test_path: str,
    reference_path: str,
    output_path: str,
    quantile: Optional[float],
    tune_thresh: Optional[float],
    no_fine_tune: bool,
    n_workers: Optional[int],
    layer: Optional[str],
    config: Optional[str],
) -> None:
    """Classify test samples against a trained reference."""
    logger = ctx.obj["logger"]
    logger.info("Classifying: %s", test_path)

    from celltype_reference.core.classification import classify_samples
    from celltype_reference.io import (
        ensure_output_dir,
        load_expression_matrix,
        load_reference,
        log_json,
        run_record,
    )

    cfg = _load_config(config)
    classification = _replace(
        cfg.classification,
        quantile=quantile,
        tune_thresh=tune_thresh,
        fine_tune=False if no_fine_tune else None,
        n_workers=n_workers,
        layer=layer,
    )
    out_dir = ensure_output_dir(output_path)

    trained = load_reference(reference_path)
    test = load_expression_matrix(test_path, layer=classification.layer)
    result = classify_samples(
        test,
        trained,
        config=classification,
        pruning=cfg.pruning,
        logger=logger,
    )
    paths = result.write(out_dir)
    log_json(
        out_dir / "runs.jsonl",
        run_record(
            "classify",
            test=str(test_path),
            reference=str(reference_path),
            n_samples=len(result.labels),
            n_pruned=result.n_pruned(),
            classification=dataclasses.asdict(classification),
        ),
    )

    click.echo(f"Classification complete: {len(result.labels)} samples")
    click.echo(f"Output saved to: {paths['predictions']}")


@cli.command()
@click.option("--test", "-t", "test_path", required=True, type=click.Path(exists=True),
              help="Test expression matrix (CSV genes x samples, or .h5ad)")
@click.option("--ref", "-r", "ref_path", required=True, type=click.Path(exists=True),
              help="Reference expression matrix (CSV genes x samples, or .h5ad)")
@click.option("--labels", "-l", "labels_path", type=click.Path(exists=True),
              help="Reference labels CSV (sample id, label)")
@click.option("--label-key", help="Label column in reference obs (.h5ad input)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--genes", type=click.Choice(["de", "sd", "all"]), default=None,
              help="Feature selection mode")
@click.option("--markers", type=click.Path(exists=True),
              help="Marker genes JSON (per label, or per label pair)")
@click.option("--no-fine-tune", is_flag=True, help="Skip fine-tuning")
@click.option("--n-workers", type=int, default=None, help="Parallel workers")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML)")
@click.pass_context
def annotate(
    ctx: click.Context,
    test_path: str,
    ref_path: str,
    labels_path: Optional[str],
    label_key: Optional[str],
    output_path: str,
    genes: Optional[str],
    markers: Optional[str],
    no_fine_tune: bool,
    n_workers: Optional[int],
    config: Optional[str],
) -> None:
    """Train on a reference and classify test samples in one step."""
    logger = ctx.obj["logger"]

    from celltype_reference.core.classification import ClassificationEngine
    from celltype_reference.io import ensure_output_dir, load_expression_matrix

    cfg = _load_config(config)
    cfg = dataclasses.replace(
        cfg,
        training=_replace(cfg.training, genes=genes, n_workers=n_workers),
        classification=_replace(
            cfg.classification,
            fine_tune=False if no_fine_tune else None,
            n_workers=n_workers,
        ),
    )
    out_dir = ensure_output_dir(output_path)

    ref = load_expression_matrix(ref_path, layer=cfg.training.layer)
    labels = _read_reference_labels(ref, labels_path, label_key)
    test = load_expression_matrix(test_path, layer=cfg.classification.layer)

    engine = ClassificationEngine(cfg, logger)
    result = engine.run(test, ref, labels, genes=_read_markers(markers), output_dir=out_dir)

    click.echo(
        f"Annotation complete: {len(result.labels)} samples, {result.n_pruned()} pruned"
    )
    click.echo(f"Output saved to: {out_dir}")


@cli.command()
@click.option("--scores", "-s", "scores_path", required=True, type=click.Path(exists=True),
              help="Score table CSV (sample id, one column per label)")
@click.option("--tuning", type=click.Path(exists=True),
              help="Fine-tuning trace CSV with 'first' and 'second' columns")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--nmads", type=float, default=3.0, help="MADs below the label median")
@click.option("--min-diff-med", type=float, default=None,
              help="Minimum top-minus-median gap (default: derived)")
@click.option("--min-diff-next", type=float, default=0.05,
              help="Minimum gap between the two best fine-tuning scores")
@click.pass_context
def prune(
    ctx: click.Context,
    scores_path: str,
    tuning: Optional[str],
    output_path: str,
    nmads: float,
    min_diff_med: Optional[float],
    min_diff_next: float,
) -> None:
    """Flag low-quality calls in an existing score table."""
    logger = ctx.obj["logger"]
    logger.info("Pruning scores from: %s", scores_path)

    import pandas as pd
    from celltype_reference.core.classification import prune_scores
    from celltype_reference.io import ensure_output_dir, write_dataframe

    scores = pd.read_csv(scores_path, index_col=0)
    tuning_scores = None
    labels = None
    if tuning:
        table = pd.read_csv(tuning, index_col=0).loc[scores.index]
        # predictions.csv stores the trace as tuning_first/tuning_second
        table = table.rename(columns={"tuning_first": "first", "tuning_second": "second"})
        has_trace = {"first", "second"}.issubset(table.columns)
        if not has_trace and "labels" not in table.columns:
            raise click.UsageError(
                "--tuning needs 'first'/'second' (or 'tuning_first'/'tuning_second') "
                "or a 'labels' column"
            )
        if has_trace:
            tuning_scores = table.loc[:, ["first", "second"]]
        if "labels" in table.columns:
            labels = table["labels"].astype(str).to_numpy()
    if labels is None:
        labels = scores.columns[scores.to_numpy().argmax(axis=1)].to_numpy()

    flags, thresholds = prune_scores(
        scores,
        tuning_scores=tuning_scores,
        labels=labels,
        nmads=nmads,
        min_diff_med=min_diff_med,
        min_diff_next=min_diff_next,
        get_thresholds=True,
    )

    out_dir = ensure_output_dir(output_path)
    pruned = pd.DataFrame({"labels": labels, "pruned": flags}, index=scores.index)
    output_file = write_dataframe(pruned, out_dir / "pruned.csv", index=True)
    write_dataframe(
        thresholds.rename("threshold").rename_axis("label").to_frame(),
        out_dir / "thresholds.csv",
        index=True,
    )

    click.echo(f"Pruned {int(flags.sum())} of {len(flags)} samples")
    click.echo(f"Output saved to: {output_file}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
