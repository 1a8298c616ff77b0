"""
KYC Registry

Federated Know-Your-Customer registry: member banks register customers,
file KYC requests and vote on each other's customer data, with derived
KYC approval and complaint-driven voting eligibility.
"""

__version__ = "1.0.0"
