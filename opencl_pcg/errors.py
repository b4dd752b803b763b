"""
Exceptions raised by opencl_pcg

Numerical breakdown and non-convergence are deliberately absent here; both
are reported through opencl_pcg.pcg.PCGResult instead.
"""


class PCGError(Exception):
    """
    Base class for all opencl_pcg errors.
    """
    pass


class ConfigurationError(PCGError, ValueError):
    """
    Invalid system description, mismatched vector lengths, or bad solver controls.
    Always raised before any device work is attempted.
    """
    pass


class ResourceError(PCGError, RuntimeError):
    """
    Device memory could not be allocated, or the solver was used after close().
    """
    pass
