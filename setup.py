from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="region-tile-downloader",
    version="0.1.0",
    author="Your Name",
    author_email="your.email@example.com",
    description="Rate-limited, resumable concurrent downloader for the map tiles covering a bounding box",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/region-tile-downloader",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.9',
    install_requires=[
        'pyyaml>=6.0',
        'requests>=2.31.0',
        'python-dotenv>=1.0.0',
        'schedule>=1.2.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'tile-downloader=tile_downloader.__main__:main',
        ],
    },
)
