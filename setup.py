from setuptools import setup, find_packages

setup(
    name='wearable-dock',
    version='0.1.0',
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    python_requires='>=3.10',
    install_requires=[
        'paho-mqtt',
        'psutil',
        'pyudev',
        'redis',
        'termcolor',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'wearable-dock=wearable_dock.main:main',
            'wearable-dock-publish=wearable_dock.main:publish_file',
        ],
    },
)
