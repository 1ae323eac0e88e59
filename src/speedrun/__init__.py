"""
Staged driver for the nanochat speedrun: tokenizer, pretraining, midtraining, SFT and report.
"""

__version__ = "0.1.0"
