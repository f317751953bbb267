"""
depfuzz: randomized exploration of shell scripts for undeclared runtime dependencies.

The package rewrites a bash script so that its conditionals, loops and case
blocks are driven by a random decision stream, runs it with an empty command
search path, and reports every program or sourced file the run tried to reach.
"""

__version__ = "0.1.0"
