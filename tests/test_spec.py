import pytest

from kktreg.core.errors import ConfigurationError, RegressionError
from kktreg.estimators.base import N_CHUNKS_ENV, ModelSpec, SolverConfig
from kktreg.utils.constraints import LinearConstraint


def test_model_spec_normalises_input(scenario_regressors, scenario_constraints):
    spec = ModelSpec("Return", list(scenario_regressors), scenario_constraints, weight="Weight")
    assert spec.regressors == scenario_regressors
    assert spec.n_regressors == 7
    assert spec.n_constraints == 2
    assert spec.constraint_labels == ("Size + 2*Value = 3", "Tech + Energy + Utility = 0")
    C, d = spec.constraint_matrix()
    assert C.shape == (2, 7)
    assert list(d) == [3.0, 0.0]


def test_model_spec_single_regressor_and_no_constraints():
    spec = ModelSpec("y", "x")
    assert spec.regressors == ("x",)
    assert spec.constraints == ()
    assert spec.weight is None


def test_model_spec_accepts_constraint_objects():
    con = LinearConstraint({"a": 1.0, "b": -1.0}, 0.0)
    spec = ModelSpec("y", ("a", "b"), [con])
    assert spec.constraints == (con,)


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"regressand": None, "regressors": ("a",)}, "regressand"),
        ({"regressand": "y", "regressors": ()}, "At least one"),
        ({"regressand": "y", "regressors": ("a", "b", "a")}, "Duplicate"),
        ({"regressand": "y", "regressors": (["a"],)}, "hashable"),
        (
            {"regressand": "y", "regressors": ("a",), "constraints": [LinearConstraint({"b": 1.0}, 0.0)]},
            "unknown regressor",
        ),
        ({"regressand": "y", "regressors": ("a",), "constraints": "b = 0"}, "unknown regressor"),
        ({"regressand": "y", "regressors": ("a",), "constraints": "a + = 0"}, "Unparsed"),
    ],
)
def test_model_spec_validation(kwargs, match):
    with pytest.raises(ConfigurationError, match=match):
        ModelSpec(**kwargs)


def test_model_spec_is_frozen():
    spec = ModelSpec("y", ("a",))
    with pytest.raises(AttributeError):
        spec.regressand = "z"  # type: ignore[misc]


def test_configuration_error_hierarchy():
    with pytest.raises(ValueError):
        ModelSpec("y", ())
    with pytest.raises(RegressionError):
        ModelSpec("y", ())


def test_solver_config_defaults(monkeypatch):
    monkeypatch.delenv(N_CHUNKS_ENV, raising=False)
    cfg = SolverConfig()
    assert cfg.n_chunks == 1
    assert cfg.max_workers is None
    assert cfg.rcond_tol == 1e-13
    assert cfg.verify_constraints is True
    assert cfg.verify_rtol == 1e-9
    assert cfg.check_finite is True


def test_solver_config_reads_environment(monkeypatch):
    monkeypatch.setenv(N_CHUNKS_ENV, "4")
    assert SolverConfig().n_chunks == 4
    assert SolverConfig(n_chunks=2).n_chunks == 2


@pytest.mark.parametrize("raw", ["zero", "0", "-3", "1.5"])
def test_solver_config_invalid_environment(monkeypatch, raw):
    monkeypatch.setenv(N_CHUNKS_ENV, raw)
    with pytest.raises(ConfigurationError, match=N_CHUNKS_ENV):
        SolverConfig()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"n_chunks": 0},
        {"n_chunks": True},
        {"n_chunks": 2.5},
        {"max_workers": 0},
        {"rcond_tol": -1.0},
        {"rcond_tol": float("nan")},
        {"verify_rtol": 0.0},
    ],
)
def test_solver_config_validation(monkeypatch, kwargs):
    monkeypatch.delenv(N_CHUNKS_ENV, raising=False)
    with pytest.raises(ConfigurationError):
        SolverConfig(**kwargs)
