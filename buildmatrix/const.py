SANDBOX_HOME = '/home/build'
SANDBOX_WORKDIR = '/workspace'

STAGE_SHELL_PREAMBLE = 'set -e\n'

# exit status reported by coreutils timeout(1) and most process hosts
HOST_TIMEOUT_EXIT_CODE = 124

NIX_PACKAGE_PATTERN = r'[a-zA-Z_][\w\-]+'

# variables nix print-dev-env leaks from its temporary build shell
NIX_TRANSIENT_VARS = (
    'NIX_BUILD_TOP',
    'TMP',
    'TMPDIR',
    'TEMP',
    'TEMPDIR',
    'terminfo',
)
