from buildmatrix.schemas.job import JobSpec, StageSpec

TOOLCHAINS = {
    'gcc': {'CC': 'gcc', 'CXX': 'g++'},
    'clang': {'CC': 'clang', 'CXX': 'clang++'},
}


def cpp_document(build_and_test: str = 'true', provision: dict | None = None) -> dict:
    document = {
        'name': 'flatdata-cpp',
        'on': {'push': {'branches': ['master']}},
        'stages': {
            'install-deps': {'run': 'echo installing deps'},
            'generate': {'run': 'echo generated > generated.txt'},
            'build-and-test': {'run': build_and_test},
        },
        'workflows': {
            'cpp': {
                'matrix': {'toolchain': TOOLCHAINS},
                'stages': ['install-deps', 'generate', 'build-and-test'],
            },
        },
    }
    if provision is not None:
        document['provision'] = provision
    return document


def make_job(name: str = 'job', stages=(), **kwargs) -> JobSpec:
    return JobSpec(
        name=name,
        workflow=kwargs.pop('workflow', name),
        stages=tuple(
            x if isinstance(x, StageSpec) else StageSpec(label=x[0], run=x[1])
            for x in stages
        ),
        **kwargs,
    )
