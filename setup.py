# Recidiviz - a data platform for criminal justice reform
# Copyright (C) 2019 Recidiviz, Inc.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
# =============================================================================
"""Packaging for chronicler, temporal history and snapshots for SQLAlchemy models."""
import setuptools

REQUIRED_PACKAGES = [
    "attrs",
    "pytz",
    "SQLAlchemy>=2.0",
]

TEST_PACKAGES = [
    "freezegun",
    "mock",
    "more-itertools",
    "parameterized",
    "pytest",
]

setuptools.setup(
    name="chronicler",
    version="1.0.0",
    install_requires=REQUIRED_PACKAGES,
    extras_require={"test": TEST_PACKAGES},
    packages=setuptools.find_packages(include=["chronicler", "chronicler.*"]),
    python_requires=">=3.8",
)
