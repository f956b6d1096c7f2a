import numpy as np
import pytest

from kktreg.core import system as ks
from kktreg.core.errors import ConfigurationError, NumericalError, SingularSystemError
from kktreg.estimators.cwls import ConstrainedWLS
from kktreg.utils.constraints import LinearConstraint, parse_constraints


@pytest.fixture
def scenario_system(scenario_frame, scenario_regressors, scenario_constraints):
    model = ConstrainedWLS.from_frame(
        scenario_frame,
        "Return",
        scenario_regressors,
        constraints=scenario_constraints,
        weights="Weight",
    )
    return model.system


def test_scenario_entries(scenario_system):
    A = scenario_system.matrix
    b = scenario_system.vector
    assert A.shape == (9, 9)
    assert b.shape == (9,)
    assert A[0, 0] == 20.0
    assert A[1, 3] == 2712.0
    assert A[4, 8] == 1.0
    assert A[7, 1] == 1.0
    assert A[7, 2] == 2.0
    assert abs(b[0] - 610.0861) <= 1e-4
    assert b[7] == 3.0
    assert b[8] == 0.0


def test_scenario_structure(scenario_system):
    s = scenario_system
    assert s.size == s.n_regressors + s.n_constraints == 9
    assert s.is_symmetric()
    assert np.array_equal(s.matrix[7:, 7:], np.zeros((2, 2)))
    assert np.array_equal(s.matrix[:7, 7:], s.constraint_matrix.T)
    np.testing.assert_array_equal(s.constraint_matrix[1], [0, 0, 0, 0, 1, 1, 1])
    assert s.regressors == ("Beta", "Size", "Value", "Momentum", "Tech", "Energy", "Utility")
    assert s.constraint_labels == ("Size + 2*Value = 3", "Tech + Energy + Utility = 0")


def test_system_is_read_only(scenario_system):
    with pytest.raises(ValueError):
        scenario_system.matrix[0, 0] = 1.0
    with pytest.raises(ValueError):
        scenario_system.vector[0] = 1.0
    with pytest.raises(ValueError):
        scenario_system.gram[0, 0] = 1.0


def test_dimension_invariant(rng):
    for p, m in [(1, 0), (3, 1), (5, 4)]:
        X = rng.standard_normal((20, p))
        y = rng.standard_normal(20)
        regs = [f"x{j}" for j in range(p)]
        cons = [LinearConstraint({regs[i]: 1.0}, float(i)) for i in range(m)]
        s = ks.assemble_system(X, y, np.ones(20), cons, regs)
        assert s.matrix.shape == (p + m, p + m)
        assert s.vector.shape == (p + m,)
        assert s.is_symmetric()


def test_build_augmented_system_validates_shapes():
    with pytest.raises(ConfigurationError, match="Inconsistent"):
        ks.build_augmented_system(np.eye(2), np.ones(3), np.zeros((0, 3)), np.zeros(0))
    with pytest.raises(ConfigurationError, match="Inconsistent"):
        ks.build_augmented_system(np.eye(2), np.ones(2), np.ones((1, 2)), np.zeros(2))


def test_build_augmented_system_non_finite():
    with pytest.raises(NumericalError, match="non-finite"):
        ks.build_augmented_system(np.array([[np.inf]]), np.ones(1), np.zeros((0, 1)), np.zeros(0))


def test_overflow_raises_numerical_error():
    X = np.array([[1e200, 1.0], [1.0, 1e200], [1.0, 1.0]])
    y = np.ones(3)
    with pytest.raises(NumericalError):
        ks.assemble_system(X, y, np.ones(3), [], ["a", "b"])


def test_solve_matches_direct_solution(scenario_system):
    sol, rcond = ks.solve_augmented(scenario_system, return_rcond=True)
    direct = np.linalg.solve(np.array(scenario_system.matrix), np.array(scenario_system.vector))
    np.testing.assert_allclose(sol, direct, rtol=1e-8, atol=1e-8)
    assert rcond > 1e-13
    beta, lam = ks.split_solution(sol, 7)
    assert beta.shape == (7,)
    assert lam.shape == (2,)
    assert ks.verify_constraints(scenario_system, beta) <= 1e-9 * 10


def test_split_solution_validation():
    with pytest.raises(ConfigurationError):
        ks.split_solution(np.ones(3), 0)
    with pytest.raises(ConfigurationError):
        ks.split_solution(np.ones(3), 4)
    beta, lam = ks.split_solution(np.arange(3.0), 3)
    assert lam.shape == (0,)
    np.testing.assert_array_equal(beta, [0.0, 1.0, 2.0])


def test_verify_constraints_detects_violation(scenario_system):
    beta = np.zeros(7)
    with pytest.raises(NumericalError, match="Constraint violation"):
        ks.verify_constraints(scenario_system, beta)


def test_redundant_constraint_is_singular(rng):
    X = rng.standard_normal((30, 3))
    y = rng.standard_normal(30)
    regs = ["a", "b", "c"]
    cons = parse_constraints("a + b = 1; 2*a + 2*b = 2", regs)
    s = ks.assemble_system(X, y, np.ones(30), cons, regs)
    with pytest.raises(SingularSystemError) as excinfo:
        ks.solve_augmented(s)
    err = excinfo.value
    assert err.block == "constraints"
    assert err.redundant_constraints == (1,)
    assert err.constraint_rank == 1
    assert err.n_regressors == 3
    assert err.n_constraints == 2
    assert isinstance(err, NumericalError)
    assert isinstance(err.__cause__, np.linalg.LinAlgError)
    assert err.context()["block"] == "constraints"


def test_collinear_regressors_are_singular(rng):
    x = rng.standard_normal(30)
    X = np.column_stack([x, 2.0 * x, rng.standard_normal(30)])
    y = rng.standard_normal(30)
    s = ks.assemble_system(X, y, np.ones(30), [], ["a", "b", "c"])
    with pytest.raises(SingularSystemError) as excinfo:
        ks.solve_augmented(s)
    assert excinfo.value.block == "gram"
    assert excinfo.value.gram_rank == 2


def test_collinearity_resolved_by_constraint(rng):
    x = rng.standard_normal(30)
    X = np.column_stack([x, x, rng.standard_normal(30)])
    y = rng.standard_normal(30)
    cons = parse_constraints("a - b = 0", ["a", "b", "c"])
    s = ks.assemble_system(X, y, np.ones(30), cons, ["a", "b", "c"])
    sol = ks.solve_augmented(s)
    assert abs(sol[0] - sol[1]) <= 1e-9


def test_too_few_observations_is_singular(rng):
    # n < p - m leaves the constrained problem unidentified
    X = rng.standard_normal((2, 5))
    y = rng.standard_normal(2)
    regs = list("abcde")
    cons = parse_constraints("a = 0", regs)
    s = ks.assemble_system(X, y, np.ones(2), cons, regs)
    with pytest.raises(SingularSystemError) as excinfo:
        ks.solve_augmented(s)
    assert excinfo.value.block == "gram"


@pytest.fixture
def mixed_scale_data(rng):
    n = 50
    X = np.column_stack(
        [
            1e6 * rng.standard_normal(n),
            1e6 * rng.standard_normal(n),
            rng.standard_normal(n),
        ],
    )
    y = X @ np.array([2e-6, -1e-6, 1.0]) + rng.standard_normal(n)
    return X, y


def test_mixed_scale_system_is_solved(mixed_scale_data, reference_solver):
    X, y = mixed_scale_data
    regs = ["a", "b", "c"]
    cons = parse_constraints("c = 1", regs)
    s = ks.assemble_system(X, y, np.ones(X.shape[0]), cons, regs)
    sol, rcond = ks.solve_augmented(s, return_rcond=True)
    assert rcond > 1e-13
    beta, _ = ks.split_solution(sol, 3)
    assert abs(beta[2] - 1.0) <= 1e-9
    C, d = s.constraint_matrix, s.constraint_rhs
    ref = reference_solver(X, y, np.ones(X.shape[0]), C, d)
    np.testing.assert_allclose(beta, ref, rtol=1e-6)


def test_mixed_scale_diagnostics_report_full_gram_rank(mixed_scale_data):
    X, y = mixed_scale_data
    regs = ["a", "b", "c"]
    cons = parse_constraints("1e6*a + c = 1; b = 0; 2e6*a + 2*c = 2", regs)
    s = ks.assemble_system(X, y, np.ones(X.shape[0]), cons, regs)
    with pytest.raises(SingularSystemError) as excinfo:
        ks.solve_augmented(s)
    err = excinfo.value
    assert err.gram_rank == 3
    assert err.block == "constraints"
    assert err.constraint_rank == 2
    assert err.redundant_constraints == (2,)
