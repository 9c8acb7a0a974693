"""perfgate: benchmark a command and gate CI on performance budgets."""

__version__ = "0.1.0"
