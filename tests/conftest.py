import os
import sys

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from fakes import CATEGORIES_PATH
from intake.categories.loader import CategoryConfigLoader


@pytest.fixture
def loader():
    return CategoryConfigLoader(CATEGORIES_PATH)


@pytest.fixture
def pi_category(loader):
    return loader.get_category("personal_injury_law")
