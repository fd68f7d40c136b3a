"""
Billing event handling: normalization, reconciliation and the error taxonomy.
"""
