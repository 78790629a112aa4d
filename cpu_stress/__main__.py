from cpu_stress.app import main

main()
