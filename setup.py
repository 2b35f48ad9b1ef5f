"""Package configuration."""

from setuptools import find_namespace_packages, setup

install_requires = [
    'elasticsearch>=7.10.0,<8.0.0',
    'prettytable',
    'requests',
    'urllib3',
    'wikimedia-spicerack',
    'wmflib',
]

# Extra dependencies
extras_require = {
    # Test dependencies
    'tests': [
        'bandit>=1.5.0',
        'flake8>=3.2.1',
        'mypy>=0.670',
        'pytest>=6.1.0',
        'types-PyYAML',
        'types-requests<2.31.0.7',
        'types-setuptools',
    ],
    'prospector': [
        'prospector[with_everything]>=0.12.4,<1.12.0',
        'pytest>=6.1.0',
    ],
}

setup(
    description='Cookbooks to roll restart Elasticsearch clusters one node at a time',
    extras_require=extras_require,
    install_requires=install_requires,
    keywords=['elasticsearch', 'automation', 'orchestration', 'cookbooks', 'rolling-restart'],
    license='GPLv3+',
    name='elasticsearch-rolling-restart-cookbooks',
    packages=find_namespace_packages(include=['cookbooks', 'cookbooks.*'], exclude=['*.tests', '*.tests.*']),
    platforms=['GNU/Linux'],
    version='0.1.0',
    zip_safe=False,
)
