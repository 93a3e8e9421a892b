"""Covariate distributions, link functions and numerical integration."""

from . import distributions as distributions
from . import integration as integration
