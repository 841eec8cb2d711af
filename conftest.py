# conftest.py
import matplotlib
import pytest

@pytest.fixture(autouse=True)
def mpl_test_backend():
    """Non-interactive backend for all tests, open figures closed afterwards."""
    matplotlib.use('Agg')
    yield
    import matplotlib.pyplot as plt
    plt.close('all')
