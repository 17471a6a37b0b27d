"""Installed-package checks."""
from typing import Iterable, Optional

from rigging.core.errors import RiggingError
from rigging.validators.base import Validator


class PackageValidator(Validator):
    """Checks packages are installed, or absent, using the distribution's query tool."""

    name = "package"

    def validate(self, environment, packages: Optional[Iterable[str]] = None,
                 absent_packages: Optional[Iterable[str]] = None, **context) -> "PackageValidator":
        self.clear()
        packages = list(packages or [])
        absent_packages = list(absent_packages or [])
        if not packages and not absent_packages:
            self.add_error("No packages specified for validation")
            return self

        for package in packages:
            installed = self._installed(environment, package)
            if installed is None:
                return self
            if not installed:
                self.add_error(f"Package {package} not installed",
                               {'package': package, 'distribution': environment.distribution})

        for package in absent_packages:
            installed = self._installed(environment, package)
            if installed is None:
                return self
            if installed:
                self.add_error(f"Package {package} should not be installed",
                               {'package': package, 'distribution': environment.distribution})
        return self

    def _installed(self, environment, package: str) -> Optional[bool]:
        try:
            return environment.package_installed(package)
        except RiggingError as e:
            self.add_error(str(e), {'package': package})
            return None
