"""
Sanitation access and child linear growth in the WASH Benefits control arms.

This package estimates the association between household sanitation at
enrollment and length-for-age Z-score at the trial endpoint in Bangladesh and
Kenya, using unadjusted and adjusted GLMs and TMLE with a super learner.
"""

__version__ = "1.0.0"
__author__ = "Data Science Research"
