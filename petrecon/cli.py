#!/usr/bin/env python3
"""
CLI: PET Image Reconstruction

Command-line interface for simulating list-mode data, reconstructing images
with MLEM/OSEM, and inspecting the system response of single LORs.

Usage:
    petrecon simulate [OPTIONS]
    petrecon reconstruct [OPTIONS] LISTMODE_FILE
    petrecon vislor [OPTIONS]

Example:
    # Two point sources, 200k emitted pairs
    petrecon simulate --source 0,0,0 --source 40,20,0 -n 200000 -o data/points.npz

    # 10 iterations of OSEM with 4 subsets on a 60^3 grid over 180 mm
    petrecon reconstruct --iterations 10 --subsets 4 data/points.npz
"""

import logging
import sys
from pathlib import Path

import click
import numpy as np
from trogon import tui

from petrecon.config import fov_from_settings, load_config
from petrecon.errors import ReconstructionError
from petrecon.fov import FOV
from petrecon.geometry import LOR, Point3
from petrecon.listmode import load_listmode, save_image, save_listmode
from petrecon.logging_config import setup_logging
from petrecon.mlem import MLEMReconstructor
from petrecon.simulate import ring_scanner_lors
from petrecon.system_response import SystemResponse, TOFModel
from petrecon.units import mm, ps
from petrecon.visualize import plot_image_slices, plot_lor_weights


# ==============================================================================
# PARAMETER PARSING
# ==============================================================================

def parse_triplet(value, kind=float, name="value"):
    """Parse ``"a,b,c"`` into a tuple of three ``kind`` values."""
    try:
        parts = tuple(kind(v) for v in value.split(','))
    except ValueError:
        raise click.BadParameter(f"{name} must be three comma-separated numbers, got {value!r}")
    if len(parts) != 3:
        raise click.BadParameter(f"{name} must be x,y,z, got {value!r}")
    return parts


def _float_triplet(ctx, param, value):
    if value is None:
        return None
    if isinstance(value, tuple):
        return tuple(parse_triplet(v, float, param.name) for v in value)
    return parse_triplet(value, float, param.name)


def _int_triplet(ctx, param, value):
    if value is None:
        return None
    return parse_triplet(value, int, param.name)


def _log_level(verbose):
    return logging.INFO if verbose else logging.WARNING


# ==============================================================================
# CLI INTERFACE
# ==============================================================================

@tui()
@click.group()
@click.option('--log-file', type=click.Path(dir_okay=False, writable=True), default=None,
              help='Also write the log to this file')
@click.pass_context
def cli(ctx, log_file):
    """PET list-mode reconstruction tools."""
    ctx.ensure_object(dict)
    ctx.obj['log_file'] = log_file


@cli.command()
@click.option('--source', '-s', multiple=True, callback=_float_triplet,
              help='Point source position in mm as x,y,z (repeatable, default: 0,0,0)')
@click.option('--events', '-n', default=100000, show_default=True,
              help='Number of emitted photon pairs')
@click.option('--radius', default=400.0, show_default=True,
              help='Detector ring radius in mm')
@click.option('--half-length', default=150.0, show_default=True,
              help='Half of the detector axial length in mm')
@click.option('--source-sigma', default=0.0, show_default=True,
              help='Gaussian spread of each source in mm')
@click.option('--tof-sigma', type=float, default=None,
              help='Timing resolution in ps; no TOF information when omitted')
@click.option('--seed', default=42, show_default=True, help='Random seed')
@click.option('--output', '-o', default='output/listmode_data.npz', show_default=True,
              type=click.Path(dir_okay=False, writable=True),
              help='List-mode file to write')
@click.option('--verbose/--quiet', '-v/-q', default=True,
              help='Verbose output')
@click.pass_context
def simulate(ctx, source, events, radius, half_length, source_sigma, tof_sigma, seed, output, verbose):
    """
    Simulate list-mode data from point sources in a cylindrical scanner.

    \b
    Examples:
        # One source at the centre
        petrecon simulate -n 50000 -o data/centre.npz

        # Two sources with 300 ps timing resolution
        petrecon simulate -s 0,0,0 -s 50,0,0 --tof-sigma 300 -o data/tof.npz
    """
    setup_logging(_log_level(verbose), ctx.obj.get('log_file'))
    click.echo("=" * 70)
    click.echo("PET LIST-MODE SIMULATION")
    click.echo("=" * 70)

    try:
        sources = list(source) if source else [(0.0, 0.0, 0.0)]
        lors = ring_scanner_lors(
            sources,
            events,
            radius=mm(radius),
            half_length=mm(half_length),
            source_sigma_mm=source_sigma,
            tof_sigma=ps(tof_sigma) if tof_sigma is not None else None,
            seed=seed,
        )
        save_listmode(output, lors)
    except (ReconstructionError, OSError, ValueError) as e:
        raise click.ClickException(str(e))

    click.echo(f"\n✓ {len(lors)} LORs saved to: {Path(output).absolute()}")


@cli.command()
@click.argument('listmode_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--config', '-c', 'config_file', type=click.Path(exists=True, dir_okay=False),
              default=None, help='JSON configuration file ({"fov": {...}, "recon": {...}})')
@click.option('--output-dir', '-o', default='output/reconstruction', show_default=True,
              help='Output directory for reconstruction results')
@click.option('--size', callback=_float_triplet, default=None,
              help='Full FOV widths in mm as x,y,z (default: 180,180,180)')
@click.option('--n-voxels', callback=_int_triplet, default=None,
              help='Voxel counts as x,y,z (default: 60,60,60)')
@click.option('--iterations', '-i', type=int, default=None,
              help='Number of full iterations (default: 5)')
@click.option('--subsets', type=int, default=None,
              help='OSEM subsets, 1 for plain MLEM (default: 1)')
@click.option('--workers', '-j', type=int, default=None,
              help='Parallel projection workers (default: 1)')
@click.option('--tof-sigma', type=float, default=None,
              help='Timing resolution in ps; enables TOF weighting')
@click.option('--tof-cutoff', type=float, default=None,
              help='Truncate the TOF Gaussian at this many sigmas (default: 3)')
@click.option('--tolerance', type=float, default=None,
              help='Stop once an iteration changes the image by less than this fraction')
@click.option('--no-cache', is_flag=True, default=False,
              help='Recompute ray traces every iteration instead of keeping them in memory')
@click.option('--postfilter', type=float, default=None,
              help='Gaussian post-filter FWHM in mm')
@click.option('--raw/--no-raw', default=False,
              help='Also write the image as raw little-endian float32')
@click.option('--save-every', type=int, default=0,
              help='Save the image every N iterations (0: final image only)')
@click.option('--plot/--no-plot', default=True,
              help='Generate visualization plots')
@click.option('--verbose/--quiet', '-v/-q', default=True,
              help='Verbose output')
@click.pass_context
def reconstruct(ctx, listmode_file, config_file, output_dir, size, n_voxels, iterations, subsets,
                workers, tof_sigma, tof_cutoff, tolerance, no_cache, postfilter, raw, save_every,
                plot, verbose):
    """
    Reconstruct a PET image from list-mode data with MLEM/OSEM.

    Settings come from the built-in defaults, then the configuration file,
    then the command-line options.

    \b
    Examples:
        # Basic reconstruction
        petrecon reconstruct output/processed/listmode_data.npz

        # Custom grid
        petrecon reconstruct --size 200,200,100 --n-voxels 100,100,50 data.npz

        # TOF OSEM on 8 threads
        petrecon reconstruct --tof-sigma 200 --subsets 8 -j 8 data.npz
    """
    setup_logging(_log_level(verbose), ctx.obj.get('log_file'))
    click.echo("=" * 70)
    click.echo("PET IMAGE RECONSTRUCTION")
    click.echo("=" * 70)

    try:
        fov_settings, config = load_config(config_file)
        if size is not None:
            fov_settings['size_mm'] = list(size)
        if n_voxels is not None:
            fov_settings['n_voxels'] = list(n_voxels)
        fov = fov_from_settings(fov_settings)
        config = config.replace(
            iterations=iterations,
            subsets=subsets,
            workers=workers,
            tof_sigma_ps=tof_sigma,
            tof_cutoff=tof_cutoff,
            tolerance=tolerance,
            cache_traces=False if no_cache else None,
            postfilter_fwhm_mm=postfilter,
            show_progress=verbose,
        )

        if verbose:
            click.echo(f"\nConfiguration:")
            click.echo(f"  FOV: {fov!r}")
            click.echo(f"  Voxel size: {tuple(np.round(fov.voxel_size_mm(), 3))} mm")
            click.echo(f"  Iterations: {config.iterations}, subsets: {config.subsets}, "
                       f"workers: {config.workers}")
            if config.tof_sigma_ps is not None:
                click.echo(f"  TOF sigma: {config.tof_sigma_ps} ps")

        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        # Step 1: Load data
        if verbose:
            click.echo("\n[1/3] Loading Data")
        lors = load_listmode(listmode_file)

        # Step 2: Reconstruct
        if verbose:
            click.echo("\n[2/3] Reconstructing")
        engine = MLEMReconstructor(fov, lors, config)

        def save_intermediate(iteration, image):
            if save_every and iteration % save_every == 0:
                save_image(output_path / f"image_iter{iteration:03d}.npy", image, fov)

        result = engine.run(callback=save_intermediate)

        image_path = save_image(output_path / "image.npy", result.image, fov)
        np.save(output_path / "sensitivity.npy", result.sensitivity)
        if raw:
            save_image(output_path / "image.raw", result.image, fov)

        # Step 3: Visualization
        if plot:
            if verbose:
                click.echo("\n[3/3] Generating Visualization")
            plot_image_slices(result.image, fov, output_path / "reconstruction.png",
                              title=f"MLEM Reconstruction ({result.iterations} iterations)")
            plot_image_slices(result.sensitivity, fov, output_path / "sensitivity.png",
                              title="Sensitivity Image")

    except (ReconstructionError, OSError, KeyError, ValueError) as e:
        raise click.ClickException(str(e))

    # Summary
    click.echo("\n" + "=" * 70)
    click.echo("RECONSTRUCTION COMPLETE")
    click.echo("=" * 70)
    click.echo(f"\n✓ Output saved to: {output_path.absolute()}")
    click.echo(f"✓ Image: {image_path.name} {result.image.shape}")
    click.echo(f"✓ Iterations: {result.iterations} ({result.state.value})")
    click.echo(f"✓ Total activity: {np.sum(result.image):.4g}")
    if result.skipped_lors:
        click.echo(f"⚠ Skipped LORs: {result.skipped_lors}")


@cli.command()
@click.option('--p1', required=True, callback=_float_triplet, help='First LOR end in mm as x,y,z')
@click.option('--p2', required=True, callback=_float_triplet, help='Second LOR end in mm as x,y,z')
@click.option('--size', callback=_float_triplet, default='180,180,180', show_default=True,
              help='Full FOV widths in mm as x,y,z')
@click.option('--n-voxels', callback=_int_triplet, default='60,60,60', show_default=True,
              help='Voxel counts as x,y,z')
@click.option('--dt', type=float, default=None, help='Arrival time difference t2 - t1 in ps')
@click.option('--tof-sigma', type=float, default=None, help='Timing resolution in ps')
@click.option('--tof-cutoff', type=float, default=3.0, show_default=True,
              help='Truncate the TOF Gaussian at this many sigmas')
@click.option('--output', '-o', default='output/lor_weights.png', show_default=True,
              type=click.Path(dir_okay=False, writable=True), help='Image file to write')
@click.option('--verbose/--quiet', '-v/-q', default=True,
              help='Verbose output')
@click.pass_context
def vislor(ctx, p1, p2, size, n_voxels, dt, tof_sigma, tof_cutoff, output, verbose):
    """
    Plot the voxel weights of a single LOR.

    \b
    Examples:
        petrecon vislor --p1 -300,-20,0 --p2 300,40,0
        petrecon vislor --p1 -300,0,0 --p2 300,0,0 --dt 200 --tof-sigma 150
    """
    setup_logging(_log_level(verbose), ctx.obj.get('log_file'))
    try:
        fov = FOV.from_full_size(size, n_voxels)
        lor = LOR(Point3.from_mm(*p1), Point3.from_mm(*p2), dt=ps(dt) if dt is not None else None)
        lor.check()
        tof = TOFModel(ps(tof_sigma), tof_cutoff) if tof_sigma is not None else None
        response = SystemResponse(fov, tof=tof)

        traced = response.trace(lor)
        if verbose:
            click.echo(f"{lor!r}")
            click.echo(f"  Voxels crossed: {len(traced)}")
            click.echo(f"  Length inside FOV: {traced.total_length.mm:.3f} mm")
        plot_lor_weights(lor, fov, response, output)
    except (ReconstructionError, OSError, ValueError) as e:
        raise click.ClickException(str(e))

    click.echo(f"✓ Saved: {output}")


def main():
    cli(obj={})


if __name__ == "__main__":
    sys.exit(main())
