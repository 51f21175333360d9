from .estimators.scm import PolicySCM

# Define __all__ to specify the public API of the policysynth package
__all__ = [
    "PolicySCM",
]
