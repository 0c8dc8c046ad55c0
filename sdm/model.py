"""
Presence/background model fitting and evaluation.

Models are fitted over repeated random calibration/evaluation splits and
scored per run, algorithm and partition. Model names follow
``<species>_AllData_RUN<k>_<ALGO>``.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

import joblib
import numpy as np
import pandas as pd
from sklearn.ensemble import GradientBoostingClassifier, RandomForestClassifier
from sklearn.inspection import permutation_importance
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import roc_auc_score, roc_curve
from sklearn.model_selection import train_test_split
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import PolynomialFeatures, SplineTransformer, StandardScaler
from tqdm import tqdm

from .config import (
    DEFAULT_ALGORITHMS,
    DEFAULT_DATA_SPLIT,
    DEFAULT_METRICS,
    DEFAULT_NB_RUN_EVAL,
    KNOWN_ALGORITHMS,
    KNOWN_METRICS,
)
from .exceptions import ConfigurationError, EmptySelectionError, ModelFittingError
from .layers import RasterStack

logger = logging.getLogger(__name__)


EVALUATION_COLUMNS = [
    "metric", "run", "algorithm", "partition",
    "score", "cutoff", "sensitivity", "specificity",
]


@dataclass
class ModelingOptions:
    """
    Hyper-parameters for each algorithm.

    GAM is an additive logistic model: every covariate gets its own cubic
    B-spline basis and the expanded terms share an L2-penalised logit link.
    """

    gam: dict = field(default_factory=lambda: {"n_knots": 5, "degree": 3, "C": 1.0, "max_iter": 1000})
    glm: dict = field(default_factory=lambda: {"degree": 2, "C": 1.0, "max_iter": 1000})
    rf: dict = field(default_factory=lambda: {"n_estimators": 500, "max_features": "sqrt", "min_samples_leaf": 1})
    gbm: dict = field(default_factory=lambda: {
        "n_estimators": 500, "learning_rate": 0.01, "max_depth": 3, "subsample": 0.5,
    })

    MODELS = {
        "GAM": lambda p, seed: Pipeline([
            ("scaler", StandardScaler()),
            ("splines", SplineTransformer(n_knots=p["n_knots"], degree=p["degree"])),
            ("lr", LogisticRegression(C=p["C"], max_iter=p["max_iter"]))
        ]),
        "GLM": lambda p, seed: Pipeline([
            ("scaler", StandardScaler()),
            ("poly", PolynomialFeatures(degree=p["degree"], include_bias=False)),
            ("lr", LogisticRegression(C=p["C"], max_iter=p["max_iter"]))
        ]),
        "RF": lambda p, seed: RandomForestClassifier(random_state=seed, **p),
        "GBM": lambda p, seed: GradientBoostingClassifier(random_state=seed, **p),
    }

    @classmethod
    def defaults(cls) -> "ModelingOptions":
        return cls()

    def params(self, algorithm: str) -> dict:
        if algorithm not in self.MODELS:
            raise ConfigurationError(
                f"Unknown algorithm: {algorithm}. Choose from {list(self.MODELS.keys())}",
                {"algorithm": algorithm},
            )
        return getattr(self, algorithm.lower())

    def build(self, algorithm: str, random_state: Optional[int] = None):
        """Return an unfitted estimator for the algorithm."""
        params = self.params(algorithm)
        return self.MODELS[algorithm](params, random_state)


@dataclass
class FormattedData:
    """Sample labels and coordinates joined to their covariate values."""

    species_name: str
    labels: np.ndarray
    coords: pd.DataFrame
    covariates: pd.DataFrame

    @property
    def resp_name(self) -> str:
        """Species name as used in model and file names."""
        return self.species_name.replace(" ", ".").replace("_", ".")

    @property
    def variables(self) -> list[str]:
        return list(self.covariates.columns)

    @property
    def X(self) -> np.ndarray:
        return self.covariates.to_numpy(dtype=float)

    @property
    def y(self) -> np.ndarray:
        return self.labels

    @property
    def n_presence(self) -> int:
        return int((self.labels == 1).sum())

    @property
    def n_background(self) -> int:
        return int((self.labels == 0).sum())


def format_data(
    labels,
    coords,
    covariates: RasterStack,
    species_name: str,
) -> FormattedData:
    """
    Bind labels, coordinates and covariates by spatial join.

    Args:
        labels: 1 for presence, 0 for background
        coords: DataFrame with longitude/latitude columns, or (n, 2) array
        covariates: Covariate stack, one layer per variable
        species_name: Species name (used for model and output names)

    Returns:
        FormattedData with rows lacking any covariate removed
    """
    labels = np.asarray(labels, dtype=int)
    if isinstance(coords, pd.DataFrame):
        coords = coords[["longitude", "latitude"]].reset_index(drop=True)
    else:
        coords = pd.DataFrame(np.asarray(coords, dtype=float), columns=["longitude", "latitude"])

    if len(labels) != len(coords):
        raise ValueError(f"{len(labels)} labels for {len(coords)} coordinates")

    values = covariates.values_at(coords["longitude"], coords["latitude"])
    complete = ~np.isnan(values).any(axis=1)

    n_incomplete = int((~complete).sum())
    if n_incomplete:
        logger.warning(f"{n_incomplete} samples lack covariate values and were dropped")

    data = FormattedData(
        species_name=species_name,
        labels=labels[complete],
        coords=coords[complete].reset_index(drop=True),
        covariates=pd.DataFrame(values[complete], columns=covariates.names),
    )

    if data.n_presence == 0 or data.n_background == 0:
        raise EmptySelectionError(
            f"Formatted data needs presence and background rows "
            f"(presence: {data.n_presence}, background: {data.n_background})",
            {"species": species_name, "variables": covariates.names},
        )

    logger.info(
        f"Formatted data for {species_name}: {data.n_presence} presence, "
        f"{data.n_background} background, variables {data.variables}"
    )
    return data


def evaluate(metric: str, y_true: np.ndarray, probability: np.ndarray) -> dict:
    """
    Score predictions with one metric.

    ROC reports the area under the curve; TSS reports the maximum true
    skill statistic. Both report the threshold maximising sensitivity +
    specificity and the sensitivity/specificity there.
    """
    if metric not in KNOWN_METRICS:
        raise ConfigurationError(f"Unknown metric: {metric}. Choose from {list(KNOWN_METRICS)}")

    fpr, tpr, thresholds = roc_curve(y_true, probability)
    youden = tpr - fpr
    best = int(np.argmax(youden))

    if metric == "ROC":
        score = roc_auc_score(y_true, probability)
    else:
        score = youden[best]

    return {
        "score": float(score),
        "cutoff": float(min(thresholds[best], 1.0)),
        "sensitivity": float(tpr[best]),
        "specificity": float(1.0 - fpr[best]),
    }


@dataclass
class ModelingOutput:
    """Fitted models plus their evaluation scores."""

    species_name: str
    variables: list[str]
    models: dict = field(default_factory=dict)
    evaluations: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=EVALUATION_COLUMNS))
    variable_importance: Optional[pd.DataFrame] = None
    settings: dict = field(default_factory=dict)

    @property
    def resp_name(self) -> str:
        return self.species_name.replace(" ", ".").replace("_", ".")

    def model_names(self, algorithm: Optional[str] = None, run=None) -> list[str]:
        """Names of fitted models, optionally filtered by algorithm and run."""
        names = []
        for name in self.models:
            _, _, run_label, algo = name.rsplit("_", 3)
            if algorithm is not None and algo != algorithm:
                continue
            if run is not None and run_label != (f"RUN{run}" if isinstance(run, int) else run):
                continue
            names.append(name)
        return names

    def get_evaluation(self, metric: str, run, algorithm: str, partition: str = "validation") -> float:
        """Score for one (metric, run, algorithm, partition)."""
        ev = self.evaluations
        match = ev[
            (ev["metric"] == metric)
            & (ev["run"].astype(str) == str(run))
            & (ev["algorithm"] == algorithm)
            & (ev["partition"] == partition)
        ]
        if match.empty:
            raise KeyError(f"No {metric} score for run {run}, {algorithm}, {partition}")
        return float(match["score"].iloc[0])

    def get_evaluations(self, metric: str, algorithm: str, partition: str = "validation") -> pd.Series:
        """Scores of one metric and algorithm, indexed by run."""
        ev = self.evaluations
        match = ev[
            (ev["metric"] == metric)
            & (ev["algorithm"] == algorithm)
            & (ev["partition"] == partition)
        ]
        return match.set_index("run")["score"]

    def predict_proba(self, name: str, X: np.ndarray) -> np.ndarray:
        """Probability of presence from one fitted model."""
        if name not in self.models:
            raise KeyError(f"No fitted model named {name}")
        return self.models[name].predict_proba(X)[:, 1]

    def save(self, output_dir: Union[str, Path]) -> Path:
        """
        Save models and evaluations below ``<output_dir>/<species>``.

        Returns:
            Species directory
        """
        species_dir = Path(output_dir) / self.resp_name
        models_dir = species_dir / "models"
        models_dir.mkdir(parents=True, exist_ok=True)

        for name, model in self.models.items():
            joblib.dump(model, models_dir / f"{name}.joblib")

        self.evaluations.to_csv(species_dir / f"{self.resp_name}.evaluations.csv", index=False)
        joblib.dump(
            {
                "species_name": self.species_name,
                "variables": self.variables,
                "model_names": list(self.models),
                "variable_importance": self.variable_importance,
                "settings": self.settings,
            },
            species_dir / f"{self.resp_name}.models.joblib",
        )
        logger.info(f"Saved {len(self.models)} models to {models_dir}")
        return species_dir

    @classmethod
    def load(cls, species_dir: Union[str, Path]) -> "ModelingOutput":
        """Load models saved with save()."""
        species_dir = Path(species_dir)
        resp_name = species_dir.name
        meta = joblib.load(species_dir / f"{resp_name}.models.joblib")

        models = {
            name: joblib.load(species_dir / "models" / f"{name}.joblib")
            for name in meta["model_names"]
        }
        evaluations = pd.read_csv(species_dir / f"{resp_name}.evaluations.csv", dtype={"run": str})

        return cls(
            species_name=meta["species_name"],
            variables=meta["variables"],
            models=models,
            evaluations=evaluations,
            variable_importance=meta["variable_importance"],
            settings=meta["settings"],
        )


def _fit_one(options: ModelingOptions, algorithm: str, X: np.ndarray, y: np.ndarray, seed: Optional[int]):
    model = options.build(algorithm, random_state=seed)
    try:
        model.fit(X, y)
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
        raise ModelFittingError(f"{algorithm} failed to fit: {e}", algorithm=algorithm) from e
    return model


def _score(metric: str, algorithm: str, y: np.ndarray, probability: np.ndarray) -> dict:
    if len(np.unique(y)) < 2:
        raise ModelFittingError(
            f"Cannot compute {metric} for {algorithm}: partition holds a single class",
            algorithm=algorithm,
        )
    return evaluate(metric, y, probability)


def fit_models(
    data: FormattedData,
    options: Optional[ModelingOptions] = None,
    algorithms: Iterable[str] = DEFAULT_ALGORITHMS,
    nb_run_eval: int = DEFAULT_NB_RUN_EVAL,
    data_split: float = DEFAULT_DATA_SPLIT,
    metrics: Iterable[str] = DEFAULT_METRICS,
    seed: Optional[int] = 42,
    var_import: int = 0,
    do_full_models: bool = False,
) -> ModelingOutput:
    """
    Fit each algorithm over repeated random calibration/evaluation splits.

    Args:
        data: Output of format_data
        options: Algorithm hyper-parameters (default: ModelingOptions())
        algorithms: Algorithms to fit (subset of GAM, GLM, RF, GBM)
        nb_run_eval: Number of random splits
        data_split: Percent of rows used for calibration in each split
        metrics: Evaluation metrics (ROC, TSS)
        seed: Base random seed; run k uses seed + k
        var_import: Permutation repeats for variable importance (0 = skip)
        do_full_models: Also fit each algorithm on all rows

    Returns:
        ModelingOutput with fitted models and evaluation table
    """
    options = options or ModelingOptions()
    algorithms = list(algorithms)
    metrics = list(metrics)

    unknown = [a for a in algorithms if a not in KNOWN_ALGORITHMS]
    if unknown:
        raise ConfigurationError(f"Unknown algorithms: {unknown}. Choose from {list(KNOWN_ALGORITHMS)}")
    unknown = [m for m in metrics if m not in KNOWN_METRICS]
    if unknown:
        raise ConfigurationError(f"Unknown metrics: {unknown}. Choose from {list(KNOWN_METRICS)}")
    if not 0 < data_split < 100:
        raise ConfigurationError(f"data_split must be between 0 and 100, got {data_split}")

    X, y = data.X, data.y
    output = ModelingOutput(
        species_name=data.species_name,
        variables=data.variables,
        settings={
            "algorithms": algorithms,
            "nb_run_eval": nb_run_eval,
            "data_split": data_split,
            "metrics": metrics,
            "seed": seed,
        },
    )
    records = []
    importance = []

    for run in tqdm(range(1, nb_run_eval + 1), desc="Model runs", disable=None):
        run_seed = None if seed is None else seed + run
        try:
            idx_cal, idx_eval = train_test_split(
                np.arange(len(y)), train_size=data_split / 100, stratify=y, random_state=run_seed
            )
        except ValueError as e:
            raise ModelFittingError(
                f"Cannot split data for run {run}: {e}", algorithm=",".join(algorithms)
            ) from e

        for algorithm in algorithms:
            name = f"{data.resp_name}_AllData_RUN{run}_{algorithm}"
            model = _fit_one(options, algorithm, X[idx_cal], y[idx_cal], run_seed)
            output.models[name] = model

            for partition, idx in (("calibration", idx_cal), ("validation", idx_eval)):
                probability = model.predict_proba(X[idx])[:, 1]
                for metric in metrics:
                    scores = _score(metric, algorithm, y[idx], probability)
                    records.append({
                        "metric": metric, "run": run, "algorithm": algorithm,
                        "partition": partition, **scores,
                    })

            if var_import:
                result = permutation_importance(
                    model, X[idx_cal], y[idx_cal],
                    scoring="roc_auc", n_repeats=var_import, random_state=run_seed,
                )
                for variable, mean, std in zip(data.variables, result.importances_mean, result.importances_std):
                    importance.append({
                        "run": run, "algorithm": algorithm, "variable": variable,
                        "importance": float(mean), "std": float(std),
                    })

            validation = [r for r in records if r["run"] == run and r["algorithm"] == algorithm
                          and r["partition"] == "validation"]
            summary = ", ".join(f"{r['metric']}={r['score']:.3f}" for r in validation)
            logger.info(f"  {name}: {summary}")

    if do_full_models:
        for algorithm in algorithms:
            name = f"{data.resp_name}_AllData_Full_{algorithm}"
            model = _fit_one(options, algorithm, X, y, seed)
            output.models[name] = model
            probability = model.predict_proba(X)[:, 1]
            for metric in metrics:
                records.append({
                    "metric": metric, "run": "Full", "algorithm": algorithm,
                    "partition": "calibration", **_score(metric, algorithm, y, probability),
                })

    output.evaluations = pd.DataFrame(records, columns=EVALUATION_COLUMNS)
    if importance:
        output.variable_importance = pd.DataFrame(importance)

    return output
