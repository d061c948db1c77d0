"""plansync -- keep a planning document and a work-tracking team in step."""

__version__ = "0.1.0"
