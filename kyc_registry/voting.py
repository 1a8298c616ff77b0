"""
Consensus Rules

Pure functions that derive a customer's KYC status from its vote tally and a
bank's voting eligibility from its complaint count. Both use integer
percentages of the current federation size.
"""

DEFAULT_REJECTION_THRESHOLD_PERCENT = 33
DEFAULT_COMPLAINT_THRESHOLD_PERCENT = 33
DEFAULT_MIN_BANKS_FOR_REJECTION_RATIO = 10


def determine_kyc_status(
    total_banks: int,
    up_votes: int,
    down_votes: int,
    rejection_threshold_percent: int = DEFAULT_REJECTION_THRESHOLD_PERCENT,
    min_banks_for_rejection_ratio: int = DEFAULT_MIN_BANKS_FOR_REJECTION_RATIO
) -> bool:
    """
    Decide whether a customer's KYC is approved.

    Once the federation has more than min_banks_for_rejection_ratio members,
    a down-vote share above the threshold rejects the customer regardless of
    up-votes. Otherwise a strict majority of up-votes approves; ties and an
    empty tally reject.

    Args:
        total_banks: Current number of registered banks
        up_votes: Up-votes on the customer's current data
        down_votes: Down-votes on the customer's current data
        rejection_threshold_percent: Down-vote share (percent of banks) that rejects
        min_banks_for_rejection_ratio: Federation size the share rule needs to exceed

    Returns:
        True if the customer's KYC is approved
    """
    if total_banks > min_banks_for_rejection_ratio:
        if (100 * down_votes) // total_banks > rejection_threshold_percent:
            return False
    return up_votes > down_votes


def determine_bank_voting_status(
    total_banks: int,
    complaints_reported: int,
    complaint_threshold_percent: int = DEFAULT_COMPLAINT_THRESHOLD_PERCENT
) -> bool:
    """
    Decide whether a bank may vote given how often it has been reported.

    An empty federation has no meaningful ratio, so the bank stays eligible.
    """
    if total_banks <= 0:
        return True
    return (100 * complaints_reported) // total_banks <= complaint_threshold_percent
