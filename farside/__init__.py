"""
Remote execution and virtual file system layer for editors.

farside lets an editor browse directories, read and write files, fetch metadata and
spawn processes on the local machine or on an SSH-reachable host through the same
file system interface. On remote hosts the work is done by a small agent program that
is started over SSH and spoken to over its standard input/output.
"""
