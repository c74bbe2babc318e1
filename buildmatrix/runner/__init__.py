from buildmatrix.runner.pipeline import PipelineRunner, load_pipeline

__all__ = ['PipelineRunner', 'load_pipeline']
