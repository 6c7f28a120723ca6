"""apk-repack.

Grafts patch output back into Android application packages and drives every
package variant (base plus optional splits) through the write, align, sign,
output, install and cleanup stages.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
