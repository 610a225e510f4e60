class ConfigurationError(ValueError):
    """Raised when a factor or sensor is built from inconsistent constants.

    Covers dimension mismatches between the measurement, field direction and
    bias vectors and the pose type, non-positive scales, degenerate field
    directions, unsupported pose types and incomplete serialized state.
    """
