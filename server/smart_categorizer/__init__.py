"""Smart transaction categorization engine"""

__version__ = "1.0.0"
