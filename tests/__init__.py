"""
Immune Aggregation Ledger Test Suite

Unit tests for each ledger component plus end-to-end scenarios that drive
the service through a full decryption round-trip with the local oracle.
"""

# Version of the test suite
__version__ = '1.0.0'

# Test categories available
TEST_CATEGORIES = [
    'homomorphic_encryption',
    'access_control',
    'cooldown_guard',
    'batch_ledger',
    'aggregation_engine',
    'decryption_coordinator',
    'service_scenarios',
    'configuration'
]
