import numpy as np
import yaml

def get_skew_matrix(v: np.ndarray) -> np.ndarray:
    """Get the cross product matrix [v×] for a 3D vector v."""
    v = np.asarray(v, float).reshape(3)
    return np.array([[0, -v[2], v[1]],
                     [v[2], 0, -v[0]],
                     [-v[1], v[0], 0]])


def get_perp_column(v: np.ndarray) -> np.ndarray:
    """Planar counterpart of [v×]: d(R(-δ)·v)/dδ at δ = 0, as a 2×1 column."""
    v = np.asarray(v, float).reshape(2)
    return np.array([[v[1]],
                     [-v[0]]])


def as_readonly_vector(v) -> np.ndarray:
    """Copy v into a flat float array that cannot be written to."""
    arr = np.array(v, dtype=float).reshape(-1)
    arr.setflags(write=False)
    return arr


def load_yaml(path: str) -> dict:
    """Load a YAML file and return its contents as a dictionary"""
    with open(path, 'r') as file:
        data = yaml.safe_load(file)
    return data
