import os
from setuptools import setup, find_packages, Command
import subprocess

class BuildSphinx(Command):
    description = "Build Sphinx documentation."
    user_options = [
        ('builder=', 'b', 'Sphinx builder to use (html, latex)')
    ]

    def initialize_options(self):
        self.builder = 'html'
        self.build_dir = None

    def finalize_options(self):
        self.build_dir = os.path.join(os.path.dirname(__file__), 'docs/_build')

    def run(self):
        # Regenerate the API .rst files for the solve_msivp package first.
        from sphinx.ext.apidoc import main as sphinx_apidoc_main
        sphinx_apidoc_main([
            '--force',
            '--module-first',
            '-o', os.path.join('docs', 'source'),
            'solve_msivp',
        ])

        from sphinx.cmd.build import main as sphinx_main
        errno = sphinx_main([
            '-b', self.builder,
            os.path.join('docs', 'source'),
            os.path.join(self.build_dir, self.builder),
        ])
        if errno:
            raise SystemExit(errno)

        if self.builder == 'latex':
            latex_dir = os.path.join(self.build_dir, 'latex')
            errno = subprocess.call(['make', 'all-pdf'], cwd=latex_dir)
            if errno:
                raise SystemExit(errno)
            print("PDF generated in:", latex_dir)

setup(
    name="solve_msivp",
    version="0.1.0",
    packages=find_packages(exclude=['tests', 'tests.*', 'docs']),
    description="Variable-order, variable-step Adams/BDF multistep IVP solver with forward sensitivities and quadratures",
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "scipy>=1.12",
    ],
    extras_require={
        "test": ["pytest"],
        "docs": ["sphinx"],
    },
    entry_points={
        "console_scripts": [
            "solve_msivp-selftest=solve_msivp._selftest:main",
        ],
    },
    cmdclass={'build_sphinx': BuildSphinx},
)
