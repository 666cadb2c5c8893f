from kappsul_devenv.cli import main

main()
