"""
Run-wide settings for the protocol interface retyping pass.

All values are plain module constants; the Ghidra entry script and the tests adjust them by
assignment before a run starts.
"""

###################################################################################################
#    VERBOSITY                                                                                    #
###################################################################################################
# set whether or not to print detailed debug information to stdout
VERBOSE_DETAIL = False
# set whether or not to print debug information to stdout
VERBOSE_DEBUG = False
# set whether or not to print less detailed progress information to stdout
VERBOSE_INFO = True
# set whether or not to print warning information to stdout
VERBOSE_WARNING = True
# set whether or not to print error information to stdout
VERBOSE_ERROR = True

###################################################################################################
#    RETYPING BEHAVIOUR                                                                           #
###################################################################################################
# maximum number of pointer layers an array element may carry before reaching a primitive, e.g. at
# depth 1 "void *[2]" is a retypable stack slot, at depth 2 "int **[2]" is as well
ARRAY_POINTER_DEPTH = 1

# when a GUID resolved at the call site disagrees with the discovery report, abandon the site
# instead of trusting the report
STRICT_GUID_CHECK = False

# seconds the decompiler may spend on a single function
DECOMPILE_TIMEOUT = 60

###################################################################################################
#    INPUTS                                                                                       #
###################################################################################################
# set these to file paths to skip the file prompts of the Ghidra script,
# e.g.: PROTOCOLS_JSON = "/tmp/module.efi.json"
PROTOCOLS_JSON = None
GUIDS_JSON = None
