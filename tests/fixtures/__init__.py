"""
Matching Test Fixtures Package
Record factories, embedding helpers and in-memory fakes shared by the tests.
"""

from .factories import *
