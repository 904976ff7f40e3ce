#+
# Setuptools script to install DBusGlue. Make sure setuptools
# <https://setuptools.pypa.io/en/latest/index.html> is installed.
# Invoke from the command line in this directory as follows:
#
#     python3 setup.py build
#     sudo python3 setup.py install
#
# Written by Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
#-

import sys
import setuptools
from setuptools.command.build_py import \
    build_py as std_build_py

class my_build_py(std_build_py) :
    "customization of build to perform additional validation."

    def run(self) :
        if sys.version_info < (3, 6) :
            sys.stderr.write("This module requires Python 3.6 or later.\n")
            sys.exit(-1)
        #end if
        super().run()
    #end run

#end my_build_py

setuptools.setup \
  (
    name = "DBusGlue",
    version = "1.0",
    description = "typed D-Bus containers and pending-call replies for libdbus, for Python 3.6 or later",
    long_description = "typed D-Bus containers and pending-call replies for libdbus, for Python 3.6 or later",
    author = "Lawrence D'Oliveiro",
    author_email = "ldo@geek-central.gen.nz",
    license = "LGPL v2.1+",
    py_modules = ["dbusglue"],
    python_requires = ">=3.6",
    extras_require =
        {
            "test" : ["pytest"],
        },
    cmdclass =
        {
            "build_py" : my_build_py,
        },
  )
