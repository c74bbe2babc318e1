import json
import logging
import os.path
import shlex
import shutil

from buildmatrix.config import config
from buildmatrix.const import NIX_TRANSIENT_VARS
from buildmatrix.exceptions import CancellationError, ConfigurationError, ProvisioningError
from buildmatrix.runner.context import JobContext, ProcessOutcome
from buildmatrix.schemas import DependencyResult, ProvisionResult
from buildmatrix.schemas.pipeline import ProvisionDef
from buildmatrix.utils import BASH, JQ, NIX

logger = logging.getLogger(__name__)


def install_template(provision: ProvisionDef) -> str | None:
    """Shell template installing one ``{package}``, None for nix."""
    if provision.mechanism == 'nix':
        return None
    if provision.command:
        return provision.command
    try:
        return config.install_commands[provision.mechanism]
    except KeyError:
        raise ConfigurationError(
            f'Unknown provisioning mechanism {provision.mechanism!r}'
        ) from None


class EnvironmentProvisioner:
    """Installs the dependencies of one job before its first stage.

    Runs in the job's own context every time; nothing is cached between jobs.
    """

    context: JobContext
    provision: ProvisionDef | None
    results: list[DependencyResult]

    def __init__(self, context: JobContext, provision: ProvisionDef | None):
        self.context = context
        self.provision = provision
        self.results = []

    @property
    def job_name(self) -> str:
        return self.context.job.name

    async def run(self, env: dict[str, str]) -> ProvisionResult:
        if self.provision is None:
            return ProvisionResult()
        mechanism = self.provision.mechanism
        try:
            if mechanism == 'nix':
                extra_env = await self.install_nix(env)
            else:
                await self.install_each(env)
                extra_env = {}
        except ProvisioningError as e:
            logger.error(f'[{self.job_name}] Provisioning failed: {e}')
            if e.package is None and e.output:
                # failures not tied to one package, e.g. building the nix shell
                self.results.append(
                    DependencyResult(package=mechanism, ok=False, output=e.output)
                )
            return ProvisionResult(
                mechanism=mechanism,
                dependencies=self.results,
                failed_package=e.package,
                error=str(e),
            )
        return ProvisionResult(
            mechanism=mechanism, dependencies=self.results, env=extra_env
        )

    async def install_each(self, env: dict[str, str]):
        try:
            template = install_template(self.provision)
        except ConfigurationError as e:
            raise ProvisioningError(str(e))
        for package in self.provision.packages:
            command = template.replace('{package}', shlex.quote(package))
            logger.info(f'[{self.job_name}] Installing {package}')
            p = await self.context.exec(BASH, '-c', command, env=env)
            res = await self.context.wait(p)
            if res.outcome == ProcessOutcome.cancelled:
                raise CancellationError(f'Cancelled while installing {package}')
            ok = res.returncode == 0
            self.results.append(DependencyResult(package=package, ok=ok, output=res.stdout))
            if not ok:
                raise ProvisioningError(
                    f'Installing {package} exited with code {res.returncode}',
                    package=package,
                    output=res.stdout,
                )

    def gen_nix_shell(self) -> str:
        packages = ' '.join(self.provision.packages)
        return '''
            let
              pkgs = import (fetchTarball "https://github.com/NixOS/nixpkgs/archive/nixpkgs-unstable.tar.gz") {};
            in
              pkgs.mkShell {
                nativeBuildInputs = with pkgs; [__PACKAGES__];
              }
        '''.replace(
            '__PACKAGES__', packages
        )

    async def check_nix(self, *args: str, env: dict[str, str]) -> str:
        p = await self.context.exec(*args, env=env, merge_stderr=False)
        res = await self.context.wait(p)
        if res.outcome == ProcessOutcome.cancelled:
            raise CancellationError('Cancelled while building the nix environment')
        if res.returncode:
            raise ProvisioningError(
                f'{os.path.basename(args[0])} exited with code {res.returncode}',
                output=res.stderr,
            )
        return res.stdout

    async def install_nix(self, env: dict[str, str]) -> dict[str, str]:
        if self.context.use_sandbox:
            raise ProvisioningError('nix provisioning is not available inside a sandbox')

        logger.info(f'[{self.job_name}] Building nix shell for {self.provision.packages}')
        rc = await self.check_nix(
            NIX, 'print-dev-env', '--impure', '--expr', self.gen_nix_shell(), env=env
        )
        shell_env = json.loads(
            await self.check_nix(BASH, '-c', f'{rc}\n{JQ} -n env', env=env)
        )

        if (
            (nix_build_top := shell_env.get('NIX_BUILD_TOP'))
            and '/nix-shell.' in nix_build_top
            and os.path.isdir(nix_build_top)
        ):
            shutil.rmtree(nix_build_top)

        for var in NIX_TRANSIENT_VARS:
            shell_env.pop(var, None)

        self.results.extend(
            DependencyResult(package=package, ok=True)
            for package in self.provision.packages
        )
        return shell_env
