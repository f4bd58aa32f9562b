# This file makes the utils directory a Python package
# You can add common utility imports here if needed

from utils.credits import calculate_required_credits, get_credit_config, utcnow

__all__ = ['calculate_required_credits', 'get_credit_config', 'utcnow']
