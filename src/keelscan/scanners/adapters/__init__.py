"""Scanner adapters for external container image scanning tools.

Each adapter implements the ScannerAdapter interface and wraps one tool.
"""

from keelscan.scanners.adapters.dive import DiveAdapter
from keelscan.scanners.adapters.dockle import DockleAdapter
from keelscan.scanners.adapters.grype import GrypeAdapter
from keelscan.scanners.adapters.osv import OSVAdapter
from keelscan.scanners.adapters.syft import SyftAdapter
from keelscan.scanners.adapters.trivy import TrivyAdapter

__all__ = [
    "DiveAdapter",
    "DockleAdapter",
    "GrypeAdapter",
    "OSVAdapter",
    "SyftAdapter",
    "TrivyAdapter",
]
